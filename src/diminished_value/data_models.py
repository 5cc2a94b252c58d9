from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Literal, get_args

from diminished_value.errors import InvalidInput


StateCode = Literal["GA", "FL", "NC"]
FaultStatus = Literal["not_at_fault", "at_fault", "unsure"]
CaseStatus = Literal["draft", "ready_for_download", "completed"]
CaseType = Literal["diminished_value", "total_loss"]
PreAccidentValueBucket = Literal[
    "<5000",
    "5000-10000",
    "10000-20000",
    "20000-30000",
    "30000-40000",
    "40000-50000",
    "50000-75000",
    ">75000",
]
DamageLocation = Literal["front", "rear", "driver_side", "passenger_side", "multiple", "not_sure"]
RepairStatus = Literal["completed", "authorized_not_completed", "not_authorized"]
ReferralSource = Literal["body_shop", "friend_family", "insurance_adjuster", "someone_else", "no_referral"]

STATE_CODES: tuple[str, ...] = get_args(StateCode)
FAULT_STATUSES: tuple[str, ...] = get_args(FaultStatus)
CASE_STATUSES: tuple[str, ...] = get_args(CaseStatus)
CASE_TYPES: tuple[str, ...] = get_args(CaseType)
VALUE_BUCKETS: tuple[str, ...] = get_args(PreAccidentValueBucket)

CENTS = Decimal("0.01")
# Largest amount a Numeric(10, 2) column holds.
MAX_MONEY = Decimal("99999999.99")
# Fits a 32-bit INTEGER column with room to spare.
MAX_MILEAGE = 9_999_999


def to_money(value: Any, field: str) -> Decimal:
    """Coerce a numeric input to an exact ``Decimal`` without float drift."""
    if value is None or isinstance(value, bool):
        raise InvalidInput(f"{field} is required", field=field)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"{field} must be a number", field=field) from None
    if not amount.is_finite():
        raise InvalidInput(f"{field} must be a finite number", field=field)
    if amount < 0:
        raise InvalidInput(f"{field} must not be negative", field=field)
    if amount > MAX_MONEY:
        raise InvalidInput(f"{field} must not exceed {MAX_MONEY}", field=field)
    return amount


def to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS)


def to_mileage(value: Any, field: str = "mileage") -> int:
    if value is None or isinstance(value, bool):
        raise InvalidInput(f"{field} is required", field=field)
    try:
        miles = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"{field} must be a whole number", field=field) from None
    if not miles.is_finite() or miles != miles.to_integral_value():
        raise InvalidInput(f"{field} must be a whole number", field=field)
    if miles < 0:
        raise InvalidInput(f"{field} must not be negative", field=field)
    if miles > MAX_MILEAGE:
        raise InvalidInput(f"{field} must not exceed {MAX_MILEAGE}", field=field)
    return int(miles)


@dataclass(frozen=True)
class VehicleDescriptor:
    year: int
    make: str
    model: str
    trim: str | None = None

    def __post_init__(self) -> None:
        current_year = date.today().year
        if isinstance(self.year, bool) or not isinstance(self.year, int):
            raise InvalidInput("year must be a 4-digit year", field="year")
        if self.year < 1900 or self.year > current_year:
            raise InvalidInput(f"year must be between 1900 and {current_year}", field="year")
        if not (self.make or "").strip():
            raise InvalidInput("make is required", field="make")
        if not (self.model or "").strip():
            raise InvalidInput("model is required", field="model")

    @property
    def age(self) -> int:
        return max(0, date.today().year - self.year)

    def label(self) -> str:
        parts = [str(self.year), self.make, self.model]
        if self.trim:
            parts.append(self.trim)
        return " ".join(parts)


@dataclass(frozen=True)
class ClaimDescriptor:
    mileage: int
    state: StateCode
    fault: FaultStatus

    def __post_init__(self) -> None:
        object.__setattr__(self, "mileage", to_mileage(self.mileage))
        if self.state not in STATE_CODES:
            raise InvalidInput(f"state must be one of {', '.join(STATE_CODES)}", field="state")
        if self.fault not in FAULT_STATUSES:
            raise InvalidInput(f"fault must be one of {', '.join(FAULT_STATUSES)}", field="fault")


@dataclass(frozen=True)
class EstimateResult:
    min: Decimal
    max: Decimal
    qualified: bool

    def __post_init__(self) -> None:
        if self.min < 0 or self.max < 0:
            raise ValueError("estimate bounds must be non-negative")
        if self.min > self.max:
            raise ValueError("estimate min must not exceed max")
