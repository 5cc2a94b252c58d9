from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import uvicorn
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from diminished_value.config import EstimationConfig
from diminished_value.data_models import (
    CaseStatus,
    CaseType,
    ClaimDescriptor,
    DamageLocation,
    FaultStatus,
    MAX_MILEAGE,
    MAX_MONEY,
    ReferralSource,
    RepairStatus,
    StateCode,
    VALUE_BUCKETS,
    VehicleDescriptor,
    to_cents,
)
from diminished_value.eligibility import is_guarantee_eligible
from diminished_value.errors import DependencyUnavailable, InvalidInput, InvalidStatusTransition
from diminished_value.estimation import breakdown, estimate, prequalify_with_lookup
from intake_service.auth import PartnerKeyAuth, RateLimiter, parse_api_keys
from intake_service.chat import NegotiationContext, classify, respond
from intake_service.logging_config import bind_correlation_id, configure_logging, get_correlation_id
from intake_service.market_value import AgeTableMarketValue, MarketCheckValueClient, MarketValueFacade
from intake_service.messaging import (
    CASE_EVENTS_TOPIC,
    PREQUAL_LEADS_TOPIC,
    WIZARD_SUBMISSIONS_TOPIC,
    IntakeEvent,
    KafkaBus,
)
from intake_service.settings import ServiceSettings
from intake_service.storage import PostgresStore, RedisCache
from intake_service.vehicles import VehicleLookup

logger = logging.getLogger(__name__)


# ── Request / Response Models ───────────────────────────────────────

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FullEstimateRequest(CamelModel):
    pre_accident_value: Decimal = Field(le=MAX_MONEY)
    repair_cost: Decimal = Field(le=MAX_MONEY)
    mileage: int = Field(le=MAX_MILEAGE)


class FullEstimateResponse(CamelModel):
    diminished_value: int


class PrequalRequest(CamelModel):
    year: int
    make: str
    model: str
    trim: str | None = None
    mileage: int = Field(le=MAX_MILEAGE)
    state: StateCode
    fault: FaultStatus


class PrequalResponse(CamelModel):
    id: str
    estimate_min: int
    estimate_max: int
    qualified: bool


class UserCreateRequest(CamelModel):
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$")
    name: str | None = None


class CaseCreateRequest(CamelModel):
    user_id: str | None = None
    prequal_lead_id: str | None = None
    case_type: CaseType = "diminished_value"
    state: StateCode
    status: CaseStatus = "draft"
    at_fault_insurer_name: str | None = None
    claim_number: str | None = None
    adjuster_name: str | None = None
    adjuster_email: str | None = None
    date_of_loss: str | None = None
    year: int
    make: str
    model: str
    trim: str | None = None
    vin: str | None = Field(default=None, min_length=17, max_length=17)
    mileage_at_loss: int | None = Field(default=None, ge=0, le=MAX_MILEAGE)
    is_ev: bool = False
    body_shop_name: str | None = None
    body_shop_phone: str | None = None
    total_repair_cost: Decimal | None = Field(default=None, ge=0, le=MAX_MONEY)
    key_impact_areas: str | None = None
    repair_summary: str | None = None
    prior_accidents: int = Field(default=0, ge=0)
    user_notes: str | None = None


class CaseUpdateRequest(CamelModel):
    status: CaseStatus | None = None
    at_fault_insurer_name: str | None = None
    claim_number: str | None = None
    adjuster_name: str | None = None
    adjuster_email: str | None = None
    date_of_loss: str | None = None
    trim: str | None = None
    vin: str | None = Field(default=None, min_length=17, max_length=17)
    mileage_at_loss: int | None = Field(default=None, ge=0, le=MAX_MILEAGE)
    is_ev: bool | None = None
    body_shop_name: str | None = None
    body_shop_phone: str | None = None
    total_repair_cost: Decimal | None = Field(default=None, ge=0, le=MAX_MONEY)
    key_impact_areas: str | None = None
    repair_summary: str | None = None
    prior_accidents: int | None = Field(default=None, ge=0)
    market_check_price: Decimal | None = Field(default=None, ge=0, le=MAX_MONEY)
    pre_accident_value: Decimal | None = Field(default=None, ge=0, le=MAX_MONEY)
    user_notes: str | None = None


class CalculateRequest(CamelModel):
    pre_accident_value: Decimal | None = Field(default=None, le=MAX_MONEY)
    repair_cost: Decimal | None = Field(default=None, le=MAX_MONEY)
    mileage: int | None = Field(default=None, le=MAX_MILEAGE)


class WizardAppraisalRequest(CamelModel):
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$")
    year: int
    make: str
    model: str
    trim: str | None = None
    mileage: int | None = Field(default=None, ge=0, le=MAX_MILEAGE)
    vin: str | None = None
    accident_date: str = Field(min_length=1)
    accident_state: str = Field(pattern=r"^[A-Z]{2}$")
    other_driver_at_fault: bool = True
    damage_location: DamageLocation
    repair_status: RepairStatus
    repair_estimate_uploaded: bool = False
    pre_accident_value_bucket: str
    referral_source: ReferralSource
    referral_name: str | None = None
    body_shop_name: str | None = None
    body_shop_location: str | None = None
    at_fault_insurance_company: str = Field(min_length=1)
    claim_number: str | None = None


class ChatRequest(CamelModel):
    message: str = Field(min_length=1, max_length=2000)


class ChatResponse(CamelModel):
    topic: str
    reply: str


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── Metrics ─────────────────────────────────────────────────────────

LATENCY_WINDOW = 1000

_counters: dict[str, int] = defaultdict(int)
# Percentiles cover the most recent samples; totals live in _counters.
_latencies: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=LATENCY_WINDOW))


def _record_latency(name: str, seconds: float) -> None:
    _latencies[name].append(seconds)
    _counters[f"{name}_count"] += 1


# ── Helpers ─────────────────────────────────────────────────────────

def _serialize(row: dict[str, Any]) -> dict[str, Any]:
    """Row -> JSON body: camelCase keys, ISO timestamps, money as fixed-point strings."""
    out: dict[str, Any] = {}
    for key, value in row.items():
        if isinstance(value, Decimal):
            value = str(to_cents(value))
        elif hasattr(value, "isoformat"):
            value = value.isoformat()
        out[to_camel(key)] = value
    return out


def _parse(model: type[CamelModel], payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = str(first["loc"][-1]) if first["loc"] else None
        raise InvalidInput(first["msg"], field=field) from None


def _vehicle(year: int, make: str, model: str, trim: str | None = None) -> VehicleDescriptor:
    return VehicleDescriptor(year=year, make=make.strip(), model=model.strip(), trim=trim or None)


def _estimation_config(settings: ServiceSettings) -> EstimationConfig:
    return EstimationConfig(
        prequal_repair_ratio=Decimal(str(settings.prequal_repair_ratio)),
        prequal_range_spread=Decimal(str(settings.prequal_range_spread)),
    )


# ── App Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    config = _estimation_config(settings)
    cache = RedisCache(redis_url=settings.redis_url)
    store = PostgresStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
    )
    market_values = MarketValueFacade(
        marketcheck=MarketCheckValueClient(
            api_key=settings.marketcheck_api_key, base_url=settings.marketcheck_base_url,
        ),
        fallback=AgeTableMarketValue(config),
        cache=cache,
        ttl_seconds=settings.market_value_cache_ttl_seconds,
    )
    vehicles = VehicleLookup(
        cache=cache,
        api_key=settings.marketcheck_api_key,
        base_url=settings.marketcheck_base_url,
        nhtsa_base_url=settings.nhtsa_base_url,
        ttl_seconds=settings.vehicle_cache_ttl_seconds,
    )

    auth = PartnerKeyAuth(parse_api_keys(settings.api_keys))
    limiter = RateLimiter(
        requests_per_minute=settings.rate_limit_rpm,
        public_requests_per_minute=settings.public_rate_limit_rpm,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        await kafka.connect()
        logger.info("Intake service started (market values: %s)", market_values.source)
        try:
            yield
        finally:
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Diminished Value Intake API", version="1.0.0", lifespan=lifespan)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = bind_correlation_id(request.headers.get("X-Correlation-ID"))
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next: Any) -> Response:
        return await limiter.middleware(request, call_next)

    # ── Error mapping ───────────────────────────────────────────────

    @app.exception_handler(InvalidStatusTransition)
    async def transition_handler(_: Request, exc: InvalidStatusTransition) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": exc.message, "field": exc.field})

    @app.exception_handler(InvalidInput)
    async def invalid_input_handler(_: Request, exc: InvalidInput) -> JSONResponse:
        _counters["invalid_input"] += 1
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.message, "field": exc.field},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {"msg": "Invalid request", "loc": ()}
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": first["msg"],
                "field": str(first["loc"][-1]) if first["loc"] else None,
                "errors": [{"field": str(e["loc"][-1]) if e["loc"] else None, "message": e["msg"]} for e in errors],
            },
        )

    @app.exception_handler(DependencyUnavailable)
    async def dependency_handler(_: Request, exc: DependencyUnavailable) -> JSONResponse:
        _counters[f"dependency_unavailable_{exc.dependency}"] += 1
        logger.warning("Dependency unavailable: %s", exc.message, extra={"dependency": exc.dependency})
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "A required service is temporarily unavailable. Please try again.", "retryable": True},
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal server error"})

    # ── Estimates ───────────────────────────────────────────────────

    async def _prequalify(payload: PrequalRequest) -> PrequalResponse:
        t0 = time.monotonic()
        vehicle = _vehicle(payload.year, payload.make, payload.model, payload.trim)
        claim = ClaimDescriptor(mileage=payload.mileage, state=payload.state, fault=payload.fault)
        result, value = await prequalify_with_lookup(vehicle, claim, market_values, config)

        lead = await store.create_prequal_lead(
            {
                "year": vehicle.year,
                "make": vehicle.make,
                "model": vehicle.model,
                "mileage": claim.mileage,
                "state": claim.state,
                "fault": claim.fault,
                "pre_accident_value": value,
                "estimate_min": result.min,
                "estimate_max": result.max,
                "qualified": result.qualified,
            }
        )
        await kafka.publish(
            IntakeEvent(PREQUAL_LEADS_TOPIC, "lead_created", lead["id"], _serialize(lead), get_correlation_id())
        )
        _record_latency("prequal", time.monotonic() - t0)
        _counters[f"prequal_{'qualified' if result.qualified else 'not_qualified'}"] += 1
        return PrequalResponse(
            id=lead["id"],
            estimate_min=int(result.min),
            estimate_max=int(result.max),
            qualified=result.qualified,
        )

    @app.post("/estimate", response_model=FullEstimateResponse | PrequalResponse)
    async def post_estimate(body: dict[str, Any] = Body(...)) -> FullEstimateResponse | PrequalResponse:
        if "preAccidentValue" in body or "pre_accident_value" in body:
            t0 = time.monotonic()
            payload = _parse(FullEstimateRequest, body)
            value = estimate(payload.pre_accident_value, payload.repair_cost, payload.mileage, config)
            _record_latency("estimate", time.monotonic() - t0)
            return FullEstimateResponse(diminished_value=int(value))
        return await _prequalify(_parse(PrequalRequest, body))

    @app.post("/prequal/estimate", response_model=PrequalResponse)
    async def post_prequal(payload: PrequalRequest) -> PrequalResponse:
        return await _prequalify(payload)

    # ── Vehicle lookups ─────────────────────────────────────────────

    @app.get("/vehicles/makes")
    async def get_makes(year: int = Query(ge=1900)) -> dict[str, Any]:
        return {"makes": await vehicles.get_makes(year)}

    @app.get("/vehicles/models")
    async def get_models(year: int = Query(ge=1900), make: str = Query(min_length=1)) -> dict[str, Any]:
        return {"models": await vehicles.get_models(year, make)}

    @app.get("/vehicles/trims")
    async def get_trims(
        year: int = Query(ge=1900), make: str = Query(min_length=1), model: str = Query(min_length=1),
    ) -> dict[str, Any]:
        return {"trims": await vehicles.get_trims(year, make, model)}

    @app.get("/vehicles/decode/{vin}")
    async def decode_vin(vin: str) -> dict[str, Any]:
        return _serialize(await vehicles.decode_vin(vin))

    # ── Users ───────────────────────────────────────────────────────

    @app.post("/users", status_code=status.HTTP_201_CREATED)
    async def create_user(req: UserCreateRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        if await store.get_user_by_email(req.email) is not None:
            raise InvalidInput("email already in use", field="email")
        return _serialize(await store.create_user(email=req.email, name=req.name))

    @app.get("/users/{user_id}")
    async def get_user(user_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        user = await store.get_user(user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")
        return _serialize(user)

    # ── Cases ───────────────────────────────────────────────────────

    async def _require_case(case_id: str) -> dict[str, Any]:
        case = await store.get_case(case_id)
        if case is None:
            raise HTTPException(status_code=404, detail="Case not found")
        return case

    async def _publish_case_event(event: str, case: dict[str, Any]) -> None:
        await kafka.publish(
            IntakeEvent(
                CASE_EVENTS_TOPIC, event, case["id"], {"caseId": case["id"], "status": case["status"]}, get_correlation_id(),
            )
        )

    @app.get("/cases")
    async def list_cases(user_id: str = Query(alias="userId"), _: str | None = Depends(auth)) -> dict[str, Any]:
        rows = await store.get_cases_by_user(user_id)
        return {"count": len(rows), "cases": [_serialize(r) for r in rows]}

    @app.post("/cases", status_code=status.HTTP_201_CREATED)
    async def create_case(req: CaseCreateRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        _vehicle(req.year, req.make, req.model, req.trim)
        if req.user_id is not None and await store.get_user(req.user_id) is None:
            raise InvalidInput("unknown user", field="userId")
        lead = None
        if req.prequal_lead_id is not None:
            lead = await store.get_prequal_lead(req.prequal_lead_id)
            if lead is None:
                raise InvalidInput("unknown pre-qualification lead", field="prequalLeadId")

        record = req.model_dump(exclude={"prequal_lead_id"})
        record["make"] = req.make.strip()
        record["model"] = req.model.strip()
        case = await store.create_case(record)
        if lead is not None:
            await store.mark_lead_converted(lead["id"], case["id"])
        await _publish_case_event("created", case)
        return _serialize(case)

    @app.get("/cases/{case_id}")
    async def get_case(case_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        return _serialize(await _require_case(case_id))

    @app.patch("/cases/{case_id}")
    async def update_case(case_id: str, req: CaseUpdateRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        existing = await _require_case(case_id)
        updates = req.model_dump(exclude_unset=True)
        for key in ("status", "is_ev", "prior_accidents"):
            if key in updates and updates[key] is None:
                del updates[key]
        updated = await store.update_case(case_id, updates)
        if updated is None:
            raise HTTPException(status_code=404, detail="Case not found")
        if updated["status"] != existing["status"]:
            await _publish_case_event("status_changed", updated)
        return _serialize(updated)

    @app.post("/cases/{case_id}/calculate")
    async def calculate_case(
        case_id: str, req: CalculateRequest | None = None, _: str | None = Depends(auth),
    ) -> dict[str, Any]:
        case = await _require_case(case_id)
        req = req or CalculateRequest()
        pre_accident_value = req.pre_accident_value if req.pre_accident_value is not None else case["pre_accident_value"]
        if pre_accident_value is None:
            raise InvalidInput("preAccidentValue is required", field="preAccidentValue")
        repair_cost = req.repair_cost if req.repair_cost is not None else (case["total_repair_cost"] or 0)
        mileage = req.mileage if req.mileage is not None else (case["mileage_at_loss"] or 0)

        result = breakdown(pre_accident_value, repair_cost, mileage, config)
        updated = await store.update_case(
            case_id,
            {
                "pre_accident_value": result.pre_accident_value,
                "post_accident_value": result.post_repair_value,
                "diminished_value_amount": result.diminished_value,
                "total_repair_cost": result.repair_cost,
                "mileage_at_loss": result.mileage,
                "calculation_details": result.as_dict(),
                "calculated_at": datetime.now(timezone.utc),
                "status": "ready_for_download",
            },
        )
        if updated is None:
            raise HTTPException(status_code=404, detail="Case not found")
        _counters["cases_calculated"] += 1
        logger.info("Case calculated", extra={"case_id": case_id, "diminished_value": str(result.diminished_value)})
        await _publish_case_event("calculated", updated)
        return {
            "case": _serialize(updated),
            "values": {
                "preAccidentValue": str(to_cents(result.pre_accident_value)),
                "postAccidentValue": str(to_cents(result.post_repair_value)),
                "diminishedValue": int(result.diminished_value),
                "breakdown": result.as_dict(),
            },
        }

    # ── Chat ────────────────────────────────────────────────────────

    @app.get("/cases/{case_id}/chat")
    async def get_chat(case_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        await _require_case(case_id)
        messages = await store.get_chat_messages(case_id)
        return {"messages": [_serialize(m) for m in messages]}

    @app.post("/cases/{case_id}/chat", response_model=ChatResponse)
    async def post_chat(case_id: str, req: ChatRequest, _: str | None = Depends(auth)) -> ChatResponse:
        case = await _require_case(case_id)
        if case["diminished_value_amount"] is None:
            raise InvalidInput("calculate the case before asking for negotiation help", field="diminishedValueAmount")
        ctx = NegotiationContext(
            vehicle=_vehicle(case["year"], case["make"], case["model"], case["trim"]).label(),
            state=case["state"],
            dv_amount=Decimal(case["diminished_value_amount"]),
            pre_accident_value=Decimal(case["pre_accident_value"] or 0),
            repair_cost=Decimal(case["total_repair_cost"] or 0),
            insurer_name=case["at_fault_insurer_name"],
        )
        reply = respond(ctx, req.message, config)
        await store.add_chat_message(case_id=case_id, role="user", content=req.message)
        await store.add_chat_message(case_id=case_id, role="assistant", content=reply)
        return ChatResponse(topic=classify(req.message), reply=reply)

    # ── Wizard ──────────────────────────────────────────────────────

    @app.post("/wizard/appraisals", status_code=status.HTTP_201_CREATED)
    async def create_wizard_appraisal(req: WizardAppraisalRequest) -> dict[str, Any]:
        _vehicle(req.year, req.make, req.model, req.trim)
        if req.pre_accident_value_bucket not in VALUE_BUCKETS:
            raise InvalidInput("select a pre-accident value range", field="preAccidentValueBucket")
        record = req.model_dump()
        record["guarantee_eligible"] = is_guarantee_eligible(req.pre_accident_value_bucket)
        row = await store.create_wizard_appraisal(record)
        await kafka.publish(
            IntakeEvent(WIZARD_SUBMISSIONS_TOPIC, "submitted", row["id"], _serialize(row), get_correlation_id())
        )
        return _serialize(row)

    @app.get("/wizard/appraisals/{appraisal_id}")
    async def get_wizard_appraisal(appraisal_id: str) -> dict[str, Any]:
        row = await store.get_wizard_appraisal(appraisal_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Appraisal not found")
        return _serialize(row)

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        summary: dict[str, Any] = {}
        for name, values in _latencies.items():
            ordered = sorted(values)
            summary[name] = {
                "count": _counters[f"{name}_count"],
                "p50_ms": round(ordered[len(ordered) // 2] * 1000, 1),
                "p95_ms": round(ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)] * 1000, 1),
            }
        return {"counters": dict(_counters), "latency": summary}

    return app


def run() -> None:
    uvicorn.run("intake_service.api:create_app", factory=True, host="0.0.0.0", port=8000)
