from decimal import Decimal

import pytest

from intake_service.chat import CHAT_RULES, NegotiationContext, classify, money, negotiation_tiers, respond


def _ctx(dv: str = "1140", **overrides) -> NegotiationContext:
    fields = {
        "vehicle": "2020 Honda Accord",
        "state": "GA",
        "dv_amount": Decimal(dv),
        "pre_accident_value": Decimal("28500"),
        "repair_cost": Decimal("4500"),
        "insurer_name": "Acme Mutual",
    }
    fields.update(overrides)
    return NegotiationContext(**fields)


@pytest.mark.parametrize(
    "message, topic",
    [
        ("The adjuster denied my claim", "denial"),
        ("They rejected it outright", "denial"),
        ("How should I negotiate?", "negotiation"),
        ("Their offer is too low", "negotiation"),
        ("Do I need a lawyer?", "legal"),
        ("How long does this take?", "timeline"),
        ("How did you calculate this?", "calculation"),
        ("Does the repair matter?", "repair"),
        ("What statute applies?", "statute"),
        ("Is there a guarantee?", "guarantee"),
        ("hello", "general"),
    ],
)
def test_classify(message, topic):
    assert classify(message) == topic


def test_rules_are_checked_in_fixed_order():
    assert [rule.topic for rule in CHAT_RULES] == [
        "denial", "negotiation", "legal", "timeline", "calculation", "repair", "statute", "guarantee",
    ]
    # "how long" would also match the calculation rule
    assert classify("how long until they pay?") == "timeline"


def test_money_formats_whole_units():
    assert money(Decimal("1140.4")) == "$1,140"
    assert money(Decimal("28500")) == "$28,500"


def test_negotiation_tiers_small_claim():
    target, accept, floor = negotiation_tiers(Decimal("800"))
    assert (target, accept, floor) == (Decimal("880"), Decimal("600"), Decimal("480"))


def test_negotiation_tiers_large_claim():
    target, accept, floor = negotiation_tiers(Decimal("2000"))
    assert (target, accept, floor) == (Decimal("2000"), Decimal("1700"), Decimal("1400"))


def test_negotiation_reply_uses_case_figures():
    reply = respond(_ctx(), "what should I counter with?")
    assert "$1,140" in reply
    assert "$969" in reply
    assert "$798" in reply


def test_denial_reply_cites_state_authority():
    reply = respond(_ctx(), "my claim was denied")
    assert "Acme Mutual" in reply
    assert "Mabry" in reply
    assert "market data" not in reply
    assert "diminished-value formula" in reply
    assert "$28,500" in reply


def test_small_claims_advice_below_threshold():
    reply = respond(_ctx(dv="400"), "should I hire an attorney?")
    assert "small claims" in reply
    assert "$140" in reply


def test_unknown_state_gets_generic_citation():
    reply = respond(_ctx(state="TX"), "what law applies here?")
    assert "state property damage law" in reply
