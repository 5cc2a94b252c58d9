from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx

from diminished_value.errors import DependencyUnavailable, InvalidInput
from intake_service.storage import RedisCache

logger = logging.getLogger(__name__)

# Model-year codes repeat every 30 years starting 1980 (I, O, Q, U, Z, 0 unused).
_YEAR_CODES = "ABCDEFGHJKLMNPRSTVWXY123456789"
_TRANSLITERATION = {
    **{str(d): d for d in range(10)},
    **dict(zip("ABCDEFGH", range(1, 9))),
    **dict(zip("JKLMN", range(1, 6))),
    "P": 7,
    "R": 9,
    **dict(zip("STUVWXYZ", range(2, 10))),
}
_WEIGHTS = (8, 7, 6, 5, 4, 3, 2, 10, 0, 9, 8, 7, 6, 5, 4, 3, 2)


def normalize_vin(vin: str) -> str:
    vin = vin.strip().upper()
    if len(vin) != 17:
        raise InvalidInput("vin must be 17 characters", field="vin")
    if any(ch not in _TRANSLITERATION for ch in vin):
        raise InvalidInput("vin may only contain digits and letters other than I, O and Q", field="vin")
    return vin


def check_digit_valid(vin: str) -> bool:
    """North American check digit (position 9). Imports often fail it."""
    total = sum(_TRANSLITERATION[ch] * w for ch, w in zip(vin, _WEIGHTS))
    remainder = total % 11
    return vin[8] == ("X" if remainder == 10 else str(remainder))


def model_year(vin: str, today: date | None = None) -> int:
    """Model year from position 10; 0 when the code is not a year code.

    A letter in position 7 marks the 2010+ cycle for passenger vehicles.
    """
    idx = _YEAR_CODES.find(vin[9])
    if idx < 0:
        return 0
    latest = (today or date.today()).year + 1
    recent = 2010 + idx
    if vin[6].isalpha() and recent <= latest:
        return recent
    return 1980 + idx


class VehicleLookup:
    """Year -> makes -> models -> trims lookups backed by MarketCheck facets.

    Each call is a plain request/response; results are cached per key.
    """

    def __init__(
        self,
        cache: RedisCache,
        api_key: str,
        base_url: str,
        nhtsa_base_url: str,
        ttl_seconds: int,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cache = cache
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.nhtsa_base_url = nhtsa_base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self._transport = transport

    async def _facet(self, facet: str, params: dict[str, Any]) -> list[str]:
        if not self.api_key:
            raise DependencyUnavailable("vehicle lookup is not configured", dependency="marketcheck")
        query = {"api_key": self.api_key, "facets": facet, "rows": 0, **params}
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                resp = await client.get(
                    f"{self.base_url}/search/car/active/facets",
                    params=query,
                    headers={"Accept": "application/json"},
                )
                resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Vehicle %s lookup failed: %s", facet, exc)
            raise DependencyUnavailable(f"vehicle {facet} lookup failed", dependency="marketcheck") from exc
        items = (payload.get("facets") or {}).get(facet) or []
        return sorted({str(f.get("item")) for f in items if f.get("item")})

    async def _cached_facet(self, cache_key: str, facet: str, params: dict[str, Any]) -> list[str]:
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return cached
        values = await self._facet(facet, params)
        await self.cache.set_json(cache_key, values, ttl_seconds=self.ttl_seconds)
        return values

    async def get_makes(self, year: int) -> list[str]:
        return await self._cached_facet(f"makes:{year}", "make", {"year": year})

    async def get_models(self, year: int, make: str) -> list[str]:
        return await self._cached_facet(
            f"models:{year}:{make.lower()}", "model", {"year": year, "make": make},
        )

    async def get_trims(self, year: int, make: str, model: str) -> list[str]:
        # trims are optional in the wizard; an outage yields an empty list
        try:
            return await self._cached_facet(
                f"trims:{year}:{make.lower()}:{model.lower()}",
                "trim",
                {"year": year, "make": make, "model": model},
            )
        except DependencyUnavailable:
            return []


    async def _nhtsa_decode(self, vin: str) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=2.0, transport=self._transport) as client:
            resp = await client.get(f"{self.nhtsa_base_url}/DecodeVinValues/{vin}", params={"format": "json"})
            resp.raise_for_status()
        row = (resp.json().get("Results") or [{}])[0]
        return {
            "model_year": int(row.get("ModelYear") or 0) or model_year(vin),
            "make": row.get("Make") or "",
            "model": row.get("Model") or "",
            "trim": row.get("Trim") or "",
            "engine": row.get("EngineModel") or "",
            "decode_source": "nhtsa",
        }

    async def decode_vin(self, vin: str) -> dict[str, Any]:
        """Decode through NHTSA vPIC, degrading to the model-year code alone."""
        vin = normalize_vin(vin)
        cache_key = f"vin_decode:{vin}"
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return cached

        try:
            details = await self._nhtsa_decode(vin)
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("NHTSA decode failed, using year code: %s", exc, extra={"vin": vin})
            details = {
                "model_year": model_year(vin),
                "make": "",
                "model": "",
                "trim": "",
                "engine": "",
                "decode_source": "year_code",
            }

        decoded = {"vin": vin, "check_digit_valid": check_digit_valid(vin), **details}
        await self.cache.set_json(cache_key, decoded, ttl_seconds=self.ttl_seconds)
        return decoded
