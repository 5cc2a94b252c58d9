from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx

from diminished_value.config import EstimationConfig
from diminished_value.data_models import VehicleDescriptor
from diminished_value.errors import DependencyUnavailable
from diminished_value.estimation import round_currency
from intake_service.storage import RedisCache

logger = logging.getLogger(__name__)


@dataclass
class MarketPricing:
    fair_retail_price: Decimal
    price_range_low: Decimal
    price_range_high: Decimal
    mileage_adjusted_price: Decimal
    sample_size: int = 0
    source: str = "marketcheck"
    raw: dict[str, Any] = field(default_factory=dict)


class MarketCheckValueClient:
    """Async client for MarketCheck used-car price statistics.

    Endpoint: GET /valuate/car/stats?year=&make=&model=[&trim=][&mileage=]
    The median listing price, nudged by $0.05 per mile away from the sample's
    mean mileage and clamped to the observed range, is the pre-accident value.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://mc-api.marketcheck.com/v2",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self.enabled = bool(api_key)

    async def get_pricing(self, vehicle: VehicleDescriptor, mileage: int | None = None) -> MarketPricing:
        if not self.enabled:
            raise DependencyUnavailable("market value lookup is not configured", dependency="marketcheck")

        params: dict[str, Any] = {
            "api_key": self.api_key,
            "car_type": "used",
            "year": vehicle.year,
            "make": vehicle.make,
            "model": vehicle.model,
        }
        if vehicle.trim:
            params["trim"] = vehicle.trim
        if mileage:
            params["mileage"] = mileage

        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                resp = await client.get(
                    f"{self.base_url}/valuate/car/stats",
                    params=params,
                    headers={"Accept": "application/json"},
                )
                resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("MarketCheck valuation failed for %s: %s", vehicle.label(), exc)
            raise DependencyUnavailable("market value lookup failed", dependency="marketcheck") from exc

        mean = _safe_decimal(data.get("mean"))
        median = _safe_decimal(data.get("median")) or mean
        if not median:
            raise DependencyUnavailable("no market data for vehicle", dependency="marketcheck")
        low = _safe_decimal(data.get("min")) or median * Decimal("0.85")
        high = _safe_decimal(data.get("max")) or median * Decimal("1.15")

        adjusted = median
        mileage_mean = _safe_decimal(data.get("mileage_mean"))
        if mileage and mileage_mean:
            adjustment = (Decimal(mileage) - mileage_mean) * Decimal("0.05")
            adjusted = max(low, min(high, median - adjustment))

        return MarketPricing(
            fair_retail_price=round_currency(median),
            price_range_low=round_currency(low),
            price_range_high=round_currency(high),
            mileage_adjusted_price=round_currency(adjusted),
            sample_size=int(data.get("count") or 0),
            raw=data,
        )

    async def get_market_value(self, vehicle: VehicleDescriptor, mileage: int) -> Decimal:
        pricing = await self.get_pricing(vehicle, mileage)
        return pricing.mileage_adjusted_price


class AgeTableMarketValue:
    """Coarse market value from vehicle age and mileage alone.

    Used when no market data provider is configured.
    """

    def __init__(self, config: EstimationConfig | None = None) -> None:
        self.config = config or EstimationConfig()

    async def get_market_value(self, vehicle: VehicleDescriptor, mileage: int) -> Decimal:
        value = self.config.age_value_floor
        for max_age, table_value in self.config.age_value_table:
            if vehicle.age <= max_age:
                value = table_value
                break
        for min_mileage, factor in self.config.age_table_mileage_factors:
            if mileage > min_mileage:
                value *= factor
                break
        return round_currency(value)


class MarketValueFacade:
    """MarketCheck when configured, otherwise the age table. Results are cached."""

    def __init__(
        self,
        marketcheck: MarketCheckValueClient,
        fallback: AgeTableMarketValue,
        cache: RedisCache,
        ttl_seconds: int,
    ) -> None:
        self.marketcheck = marketcheck
        self.fallback = fallback
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @property
    def source(self) -> str:
        return "marketcheck" if self.marketcheck.enabled else "age_table"

    async def get_market_value(self, vehicle: VehicleDescriptor, mileage: int) -> Decimal:
        if not self.marketcheck.enabled:
            return await self.fallback.get_market_value(vehicle, mileage)

        # bucket mileage so nearby requests share a cache entry
        cache_key = (
            f"market_value:{vehicle.year}:{vehicle.make.lower()}:{vehicle.model.lower()}:"
            f"{(vehicle.trim or '').lower()}:{mileage // 5000}"
        )
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return Decimal(cached["value"])

        value = await self.marketcheck.get_market_value(vehicle, mileage)
        await self.cache.set_json(cache_key, {"value": str(value)}, ttl_seconds=self.ttl_seconds)
        return value


def _safe_decimal(val: Any) -> Decimal | None:
    if val is None:
        return None
    try:
        d = Decimal(str(val))
    except (ArithmeticError, ValueError):
        return None
    return d if d.is_finite() and d > 0 else None
