from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict


@dataclass(frozen=True)
class EstimationConfig:
    base_loss_rate: Decimal = Decimal("0.10")
    # (exclusive upper bound, modifier); the final band has no upper bound
    damage_bands: tuple[tuple[Decimal, Decimal], ...] = (
        (Decimal("0.10"), Decimal("0.25")),
        (Decimal("0.40"), Decimal("0.50")),
        (Decimal("0.70"), Decimal("0.75")),
    )
    damage_ceiling_modifier: Decimal = Decimal("1.00")
    mileage_bands: tuple[tuple[int, Decimal], ...] = (
        (20_000, Decimal("1.00")),
        (40_000, Decimal("0.80")),
        (60_000, Decimal("0.60")),
        (80_000, Decimal("0.40")),
    )
    mileage_floor_modifier: Decimal = Decimal("0.20")
    prequal_repair_ratio: Decimal = Decimal("0.25")
    prequal_range_spread: Decimal = Decimal("0.15")
    # vehicle age (years, inclusive upper bound) -> assumed market value
    age_value_table: tuple[tuple[int, Decimal], ...] = (
        (2, Decimal("35000")),
        (4, Decimal("28000")),
        (6, Decimal("20000")),
        (8, Decimal("15000")),
    )
    age_value_floor: Decimal = Decimal("10000")
    # mileage (exclusive lower bound) -> value multiplier, checked in order
    age_table_mileage_factors: tuple[tuple[int, Decimal], ...] = (
        (100_000, Decimal("0.70")),
        (75_000, Decimal("0.80")),
        (50_000, Decimal("0.90")),
    )
    state_citations: Dict[str, str] = field(
        default_factory=lambda: {
            "GA": "State Farm v. Mabry, 274 Ga. App. 103",
            "FL": "Florida at-fault tort principles",
            "NC": "North Carolina property damage common law",
        }
    )
