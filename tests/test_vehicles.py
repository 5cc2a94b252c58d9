from datetime import date

import httpx
import pytest

from diminished_value.errors import DependencyUnavailable, InvalidInput
from intake_service.storage import RedisCache
from intake_service.vehicles import VehicleLookup, check_digit_valid, model_year, normalize_vin

FACETS = {
    "facets": {
        "make": [{"item": "Toyota", "count": 10}, {"item": "Honda", "count": 4}, {"item": "Honda", "count": 1}],
        "model": [{"item": "Civic"}, {"item": "Accord"}, {"item": None}],
        "trim": [{"item": "EX"}, {"item": "LX"}],
    }
}

NHTSA = {"Results": [{"ModelYear": "2003", "Make": "HONDA", "Model": "Accord", "Trim": "EX", "EngineModel": "J30A4"}]}


def _lookup(handler=None, api_key="k", seen=None) -> VehicleLookup:
    def default(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if "DecodeVinValues" in request.url.path:
            return httpx.Response(200, json=NHTSA)
        return httpx.Response(200, json=FACETS)

    return VehicleLookup(
        cache=RedisCache(redis_url="redis://localhost:65535/0"),
        api_key=api_key,
        base_url="https://mc.test/v2",
        nhtsa_base_url="https://vpic.test/api/vehicles",
        ttl_seconds=60,
        transport=httpx.MockTransport(handler or default),
    )


def _failing(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("unreachable", request=request)


@pytest.mark.asyncio
async def test_makes_are_sorted_unique_and_cached():
    seen = []
    lookup = _lookup(seen=seen)
    assert await lookup.get_makes(2020) == ["Honda", "Toyota"]
    assert await lookup.get_makes(2020) == ["Honda", "Toyota"]
    assert len(seen) == 1
    assert seen[0].url.params["facets"] == "make"
    assert seen[0].url.params["year"] == "2020"


@pytest.mark.asyncio
async def test_models_skip_empty_items():
    assert await _lookup().get_models(2020, "Honda") == ["Accord", "Civic"]


@pytest.mark.asyncio
async def test_makes_outage_raises_dependency_unavailable():
    with pytest.raises(DependencyUnavailable):
        await _lookup(handler=_failing).get_makes(2020)


@pytest.mark.asyncio
async def test_makes_without_key_raises_dependency_unavailable():
    with pytest.raises(DependencyUnavailable):
        await _lookup(api_key="").get_makes(2020)


@pytest.mark.asyncio
async def test_trims_outage_yields_empty_list():
    assert await _lookup(handler=_failing).get_trims(2020, "Honda", "Accord") == []
    assert await _lookup().get_trims(2020, "Honda", "Accord") == ["EX", "LX"]


@pytest.mark.asyncio
async def test_decode_vin_uses_nhtsa():
    decoded = await _lookup().decode_vin("1hgcm82633a123456")
    assert decoded["vin"] == "1HGCM82633A123456"
    assert decoded["model_year"] == 2003
    assert decoded["make"] == "HONDA"
    assert decoded["decode_source"] == "nhtsa"


@pytest.mark.asyncio
async def test_decode_vin_falls_back_to_year_code():
    decoded = await _lookup(handler=_failing).decode_vin("1HGCM82633A123456")
    assert decoded["model_year"] == 2003
    assert decoded["decode_source"] == "year_code"


@pytest.mark.asyncio
async def test_decode_vin_rejects_wrong_length():
    with pytest.raises(InvalidInput) as exc:
        await _lookup().decode_vin("1HGCM826")
    assert exc.value.field == "vin"


def test_check_digit():
    assert check_digit_valid("1HGCM82633A004352") is True
    assert check_digit_valid("1HGCM82633A123456") is False


def test_model_year_cycles():
    today = date(2026, 10, 18)
    assert model_year("1HGCM82633A004352", today) == 2003
    # letter in position 7 selects the 2010+ cycle
    assert model_year("5YJ3E1EA0LF000001", today) == 2020
    assert model_year("1FTFW1E50AFA00001", today) == 2010
    assert model_year("1FTFW1E5XUFA00001", today) == 0


def test_normalize_vin_rejects_ambiguous_letters():
    assert normalize_vin(" 1hgcm82633a004352 ") == "1HGCM82633A004352"
    with pytest.raises(InvalidInput):
        normalize_vin("1HGCM82633O004352")
