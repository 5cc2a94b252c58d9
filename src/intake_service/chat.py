"""Canned negotiation assistant.

Questions are matched against an ordered rule table of regular expressions;
the first matching rule selects a response template that is rendered with the
case's figures. Unmatched questions get the general response.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from diminished_value.config import EstimationConfig
from diminished_value.estimation import round_currency


@dataclass(frozen=True)
class NegotiationContext:
    vehicle: str
    state: str
    dv_amount: Decimal
    pre_accident_value: Decimal
    repair_cost: Decimal
    insurer_name: str | None = None


@dataclass(frozen=True)
class ChatRule:
    topic: str
    pattern: re.Pattern[str]


def _rule(topic: str, pattern: str) -> ChatRule:
    return ChatRule(topic=topic, pattern=re.compile(pattern, re.IGNORECASE))


CHAT_RULES: tuple[ChatRule, ...] = (
    _rule("denial", r"\bden(y|ied|ial)\b|\breject"),
    _rule("negotiation", r"negotiat|\bcounter|\blow(er)?\b|\boffer"),
    _rule("legal", r"\blawyer|\battorney|\blegal\b|\bsue\b|small claims"),
    _rule("timeline", r"how long|\btimeline\b|\bwhen\b"),
    _rule("calculation", r"calculat|\bwhy\b|\bhow\b"),
    _rule("repair", r"\brepair|\bdamage|\bcost"),
    _rule("statute", r"\bstatute|\blaw\b|\bstate\b"),
    _rule("guarantee", r"guarantee|\blose\b|\brisk"),
)


def money(amount: Decimal) -> str:
    return f"${round_currency(amount):,}"


def classify(message: str, rules: tuple[ChatRule, ...] = CHAT_RULES) -> str:
    for rule in rules:
        if rule.pattern.search(message):
            return rule.topic
    return "general"


def negotiation_tiers(dv_amount: Decimal) -> tuple[Decimal, Decimal, Decimal]:
    """Return (target, accept, floor) for a settlement discussion."""
    if dv_amount < 1000:
        return dv_amount * Decimal("1.10"), dv_amount * Decimal("0.75"), dv_amount * Decimal("0.60")
    return dv_amount, dv_amount * Decimal("0.85"), dv_amount * Decimal("0.70")


def _denial(ctx: NegotiationContext, citation: str) -> str:
    insurer = ctx.insurer_name or "the insurer"
    return (
        f"If {insurer} denies your claim, ask for the denial in writing with the policy language "
        f"or statute it relies on. Cite {citation}. Point to the {money(ctx.dv_amount)} figure, "
        f"which applies the standard diminished-value formula to the {money(ctx.pre_accident_value)} "
        f"pre-accident market value of your {ctx.vehicle}, then send a formal demand letter and ask "
        "for a supervisor review."
    )


def _negotiation(ctx: NegotiationContext, citation: str) -> str:
    target, accept, floor = negotiation_tiers(ctx.dv_amount)
    return (
        f"Your position is {money(ctx.dv_amount)} on a pre-accident value of "
        f"{money(ctx.pre_accident_value)}. Open with a written demand for {money(target)}, "
        f"treat {money(accept)} as a reasonable settlement and {money(floor)} as your floor. "
        "Lead with comparable vehicles, and if the adjuster quotes the 17(c) formula, "
        "ask for the basis in writing."
    )


def _legal(ctx: NegotiationContext, citation: str) -> str:
    if ctx.dv_amount < 500:
        fee = money(ctx.dv_amount * Decimal("0.35"))
        return (
            f"A claim of about {money(ctx.dv_amount)} fits small claims court: no lawyer is needed "
            f"and filing usually costs $50 to $150. A contingency fee would take roughly {fee}."
        )
    return (
        f"At {money(ctx.dv_amount)} the claim is large enough to pursue. Start with direct "
        "negotiation backed by the demand letter, then small claims court, and consult a "
        f"lawyer if the insurer appeals. Relevant authority: {citation}."
    )


def _calculation(ctx: NegotiationContext, citation: str) -> str:
    return (
        f"We start from the pre-accident market value of your {ctx.vehicle} "
        f"({money(ctx.pre_accident_value)}), take 10% as the base loss, and scale it by how "
        f"large the repair ({money(ctx.repair_cost)}) is relative to that value and by the "
        f"vehicle's mileage. The result is {money(ctx.dv_amount)}."
    )


def _repair(ctx: NegotiationContext, citation: str) -> str:
    return (
        f"A {money(ctx.repair_cost)} repair is recorded on your {ctx.vehicle}'s history. Buyers "
        f"discount vehicles with accident records even after proper repair, which is the "
        f"{money(ctx.dv_amount)} loss we estimate."
    )


def _timeline(ctx: NegotiationContext, citation: str) -> str:
    return (
        "Most insurers answer a demand letter within 30 days. Follow up in writing after two "
        "weeks of silence. Small claims cases usually resolve within 60 to 90 days of filing."
    )


def _statute(ctx: NegotiationContext, citation: str) -> str:
    return (
        f"In {ctx.state}, diminished value is recoverable from the at-fault party's insurer. "
        f"Key authority: {citation}. Claims must generally be filed within four years of the loss."
    )


def _guarantee(ctx: NegotiationContext, citation: str) -> str:
    return (
        "If your appraisal does not help you recover more than its cost, the money-back "
        "guarantee refunds your fee. Vehicles worth under $5,000 before the accident are not "
        "covered by the guarantee."
    )


def _general(ctx: NegotiationContext, citation: str) -> str:
    return (
        f"Your {ctx.vehicle} lost an estimated {money(ctx.dv_amount)} in market value. Ask me how "
        "it was calculated, how to negotiate, what to do after a denial, or whether to go to court."
    )


RESPONSES: dict[str, Callable[[NegotiationContext, str], str]] = {
    "denial": _denial,
    "negotiation": _negotiation,
    "legal": _legal,
    "calculation": _calculation,
    "repair": _repair,
    "timeline": _timeline,
    "statute": _statute,
    "guarantee": _guarantee,
    "general": _general,
}


def respond(ctx: NegotiationContext, message: str, config: EstimationConfig | None = None) -> str:
    citations = (config or EstimationConfig()).state_citations
    citation = citations.get(ctx.state, "state property damage law")
    return RESPONSES[classify(message)](ctx, citation)
