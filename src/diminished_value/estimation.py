"""Diminished value estimation.

The full appraisal formula scales a fixed share of the pre-accident value by a
damage modifier (repair cost relative to value) and a mileage modifier:

    dv = round(pre_accident_value * 0.10 * damage_modifier * mileage_modifier)

All arithmetic is exact ``Decimal`` arithmetic and the result is rounded to
whole currency units with ROUND_HALF_UP. The functions here hold no state and
perform no I/O, so they are safe to call from any number of request handlers.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from diminished_value.config import EstimationConfig
from diminished_value.data_models import (
    ClaimDescriptor,
    EstimateResult,
    VehicleDescriptor,
    to_mileage,
    to_money,
)
from diminished_value.errors import InvalidInput

DEFAULT_CONFIG = EstimationConfig()

_WHOLE_UNIT = Decimal("1")


def round_currency(amount: Decimal) -> Decimal:
    return amount.quantize(_WHOLE_UNIT, rounding=ROUND_HALF_UP)


def damage_modifier(ratio: Decimal, config: EstimationConfig = DEFAULT_CONFIG) -> Decimal:
    for upper, modifier in config.damage_bands:
        if ratio < upper:
            return modifier
    return config.damage_ceiling_modifier


def mileage_modifier(mileage: int, config: EstimationConfig = DEFAULT_CONFIG) -> Decimal:
    for upper, modifier in config.mileage_bands:
        if mileage < upper:
            return modifier
    return config.mileage_floor_modifier


@dataclass(frozen=True)
class EstimateBreakdown:
    pre_accident_value: Decimal
    repair_cost: Decimal
    mileage: int
    base_loss: Decimal
    repair_ratio: Decimal
    damage_modifier: Decimal
    mileage_modifier: Decimal
    diminished_value: Decimal

    @property
    def post_repair_value(self) -> Decimal:
        return max(Decimal("0"), round_currency(self.pre_accident_value) - self.diminished_value)

    @property
    def formula(self) -> str:
        return (
            f"DV = Base Value ({self.pre_accident_value}) x Base % (10%)"
            f" x Damage Mod ({self.damage_modifier}) x Mileage Mod ({self.mileage_modifier})"
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "baseValue": str(round_currency(self.pre_accident_value)),
            "baseLoss": str(round_currency(self.base_loss)),
            "repairRatio": str(self.repair_ratio.quantize(Decimal("0.0001"))),
            "damageModifier": str(self.damage_modifier),
            "mileageModifier": str(self.mileage_modifier),
            "formula": self.formula,
        }


def breakdown(
    pre_accident_value: Any,
    repair_cost: Any,
    mileage: Any,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> EstimateBreakdown:
    value = to_money(pre_accident_value, "preAccidentValue")
    cost = to_money(repair_cost, "repairCost")
    miles = to_mileage(mileage)
    if value == 0:
        raise InvalidInput("preAccidentValue must be greater than zero", field="preAccidentValue")

    base_loss = value * config.base_loss_rate
    ratio = cost / value
    damage = damage_modifier(ratio, config)
    mileage_mod = mileage_modifier(miles, config)
    return EstimateBreakdown(
        pre_accident_value=value,
        repair_cost=cost,
        mileage=miles,
        base_loss=base_loss,
        repair_ratio=ratio,
        damage_modifier=damage,
        mileage_modifier=mileage_mod,
        diminished_value=round_currency(base_loss * damage * mileage_mod),
    )


def estimate(
    pre_accident_value: Any,
    repair_cost: Any,
    mileage: Any,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> Decimal:
    """Return the diminished value in whole currency units.

    Raises ``InvalidInput`` for negative or non-numeric inputs and for a zero
    pre-accident value, for which the repair ratio is undefined.
    """
    return breakdown(pre_accident_value, repair_cost, mileage, config).diminished_value


class MarketValueLookup(Protocol):
    async def get_market_value(self, vehicle: VehicleDescriptor, mileage: int) -> Decimal:
        ...


def prequalify(
    vehicle: VehicleDescriptor,
    claim: ClaimDescriptor,
    pre_accident_value: Any,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> EstimateResult:
    """Range estimate for the free pre-qualification form.

    The repair cost is unknown at this stage, so a fixed share of the value
    (``prequal_repair_ratio``) stands in for it. The point estimate is widened
    by ``prequal_range_spread`` in both directions.
    """
    value = to_money(pre_accident_value, "preAccidentValue")
    point = estimate(value, value * config.prequal_repair_ratio, claim.mileage, config)
    low = round_currency(point * (1 - config.prequal_range_spread))
    high = round_currency(point * (1 + config.prequal_range_spread))
    return EstimateResult(min=low, max=high, qualified=claim.fault != "at_fault")


async def prequalify_with_lookup(
    vehicle: VehicleDescriptor,
    claim: ClaimDescriptor,
    lookup: MarketValueLookup,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> tuple[EstimateResult, Decimal]:
    value = await lookup.get_market_value(vehicle, claim.mileage)
    return prequalify(vehicle, claim, value, config), value
