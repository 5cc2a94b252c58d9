from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    Select,
    String,
    Table,
    Text,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from diminished_value.data_models import to_cents, to_money
from diminished_value.lifecycle import check_transition

logger = logging.getLogger(__name__)


def _money_column(name: str) -> Column:
    return Column(name, Numeric(10, 2, asdecimal=True), nullable=True)


metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

cases_table = Table(
    "cases",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True),
    Column("case_type", String(32), nullable=False),
    Column("state", String(2), nullable=False),
    Column("status", String(32), nullable=False, default="draft"),
    # claim
    Column("at_fault_insurer_name", Text, nullable=True),
    Column("claim_number", Text, nullable=True),
    Column("adjuster_name", Text, nullable=True),
    Column("adjuster_email", Text, nullable=True),
    Column("date_of_loss", String(32), nullable=True),
    # vehicle
    Column("year", Integer, nullable=False),
    Column("make", Text, nullable=False),
    Column("model", Text, nullable=False),
    Column("trim", Text, nullable=True),
    Column("vin", String(17), nullable=True),
    Column("mileage_at_loss", Integer, nullable=True),
    Column("is_ev", Boolean, nullable=False, default=False),
    # repair
    Column("body_shop_name", Text, nullable=True),
    Column("body_shop_phone", Text, nullable=True),
    _money_column("total_repair_cost"),
    Column("key_impact_areas", Text, nullable=True),
    Column("repair_summary", Text, nullable=True),
    Column("prior_accidents", Integer, nullable=False, default=0),
    # valuation
    _money_column("market_check_price"),
    _money_column("pre_accident_value"),
    _money_column("post_accident_value"),
    _money_column("diminished_value_amount"),
    Column("calculation_details", JSON, nullable=True),
    Column("calculated_at", DateTime(timezone=True), nullable=True),
    Column("user_notes", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

prequal_leads_table = Table(
    "prequal_leads",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("year", Integer, nullable=False),
    Column("make", Text, nullable=False),
    Column("model", Text, nullable=False),
    Column("mileage", Integer, nullable=False),
    Column("state", String(2), nullable=False),
    Column("fault", String(16), nullable=False),
    _money_column("pre_accident_value"),
    _money_column("estimate_min"),
    _money_column("estimate_max"),
    Column("qualified", Boolean, nullable=False),
    Column("converted_to_case_id", String(36), ForeignKey("cases.id"), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

wizard_appraisals_table = Table(
    "wizard_appraisals",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("year", Integer, nullable=False),
    Column("make", Text, nullable=False),
    Column("model", Text, nullable=False),
    Column("trim", Text, nullable=True),
    Column("mileage", Integer, nullable=True),
    Column("vin", String(17), nullable=True),
    Column("accident_date", String(32), nullable=False),
    Column("accident_state", String(2), nullable=False),
    Column("other_driver_at_fault", Boolean, nullable=False, default=True),
    Column("damage_location", String(32), nullable=False),
    Column("repair_status", String(32), nullable=False),
    Column("repair_estimate_uploaded", Boolean, nullable=False, default=False),
    Column("pre_accident_value_bucket", String(16), nullable=False),
    Column("guarantee_eligible", Boolean, nullable=False),
    Column("referral_source", String(32), nullable=False),
    Column("referral_name", Text, nullable=True),
    Column("body_shop_name", Text, nullable=True),
    Column("body_shop_location", Text, nullable=True),
    Column("at_fault_insurance_company", Text, nullable=False),
    Column("claim_number", Text, nullable=True),
    Column("payment_status", String(32), nullable=False, default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

chat_messages_table = Table(
    "chat_messages",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("case_id", String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("role", String(16), nullable=False),
    Column("content", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

CASE_MONEY_FIELDS = (
    "total_repair_cost",
    "market_check_price",
    "pre_accident_value",
    "post_accident_value",
    "diminished_value_amount",
)
CASE_WRITABLE_FIELDS = tuple(
    c.name for c in cases_table.columns if c.name not in ("id", "created_at", "updated_at")
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_money(values: dict[str, Any], fields: tuple[str, ...]) -> None:
    for key in fields:
        if values.get(key) is not None:
            values[key] = to_cents(to_money(values[key], key))


def locked_case_select(case_id: str) -> Select:
    return select(cases_table).where(cases_table.c.id == case_id).with_for_update()


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "dv-intake") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            logger.info("Redis unavailable at %s, using in-process cache", self.redis_url)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> Any:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                return None
        now = asyncio.get_running_loop().time()
        if full_key in self._expiry and now > self._expiry[full_key]:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return None
        raw = self._mem.get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                logger.warning("Redis write failed for %s, caching in-process", full_key)
        self._mem[full_key] = payload
        self._expiry[full_key] = asyncio.get_running_loop().time() + ttl_seconds


class PostgresStore:
    """Relational store for users, cases, leads, wizard submissions and chat.

    Falls back to in-process lists when the database cannot be reached so the
    service stays usable in development.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem: dict[str, list[dict[str, Any]]] = {
            t.name: [] for t in metadata.sorted_tables
        }

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception as exc:
            logger.warning("Database unavailable (%s), using in-process storage", exc)
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    # ── Generic helpers ─────────────────────────────────────────────

    async def _insert(self, table: Table, row: dict[str, Any]) -> dict[str, Any]:
        if self.engine is None:
            self._mem[table.name].append(row)
            return dict(row)
        async with self.engine.begin() as conn:
            await conn.execute(insert(table).values(**row))
        return dict(row)

    async def _get_where(self, table: Table, column: str, value: Any) -> dict[str, Any] | None:
        if self.engine is None:
            for row in self._mem[table.name]:
                if row.get(column) == value:
                    return dict(row)
            return None
        stmt = select(table).where(table.c[column] == value).limit(1)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    # ── Users ───────────────────────────────────────────────────────

    async def create_user(self, *, email: str, name: str | None = None) -> dict[str, Any]:
        row = {"id": str(uuid4()), "email": email.strip().lower(), "name": name, "created_at": _now()}
        return await self._insert(users_table, row)

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        return await self._get_where(users_table, "id", user_id)

    async def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        return await self._get_where(users_table, "email", email.strip().lower())

    # ── Cases ───────────────────────────────────────────────────────

    async def create_case(self, record: dict[str, Any]) -> dict[str, Any]:
        now = _now()
        row: dict[str, Any] = {c.name: None for c in cases_table.columns}
        row.update({k: v for k, v in record.items() if k in CASE_WRITABLE_FIELDS})
        row["status"] = row["status"] or "draft"
        check_transition("draft", row["status"])
        row["is_ev"] = bool(row["is_ev"])
        row["prior_accidents"] = int(row["prior_accidents"] or 0)
        _normalize_money(row, CASE_MONEY_FIELDS)
        row.update({"id": str(uuid4()), "created_at": now, "updated_at": now})
        return await self._insert(cases_table, row)

    async def get_case(self, case_id: str) -> dict[str, Any] | None:
        return await self._get_where(cases_table, "id", case_id)

    async def get_cases_by_user(self, user_id: str) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [dict(r) for r in self._mem[cases_table.name] if r["user_id"] == user_id]
            return sorted(rows, key=lambda r: r["updated_at"], reverse=True)
        stmt = (
            select(cases_table)
            .where(cases_table.c.user_id == user_id)
            .order_by(cases_table.c.updated_at.desc())
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    async def update_case(self, case_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        """Apply a partial update. Status may only move forward.

        On Postgres the row is locked for the read-check-write so two
        concurrent updates cannot both pass the transition check.
        """
        values = {k: v for k, v in updates.items() if k in CASE_WRITABLE_FIELDS}
        _normalize_money(values, CASE_MONEY_FIELDS)
        values["updated_at"] = _now()

        if self.engine is None:
            for row in self._mem[cases_table.name]:
                if row["id"] == case_id:
                    if values.get("status") is not None:
                        check_transition(row["status"], values["status"])
                    row.update(values)
                    return dict(row)
            return None
        async with self.engine.begin() as conn:
            current = (await conn.execute(locked_case_select(case_id))).first()
            if current is None:
                return None
            if values.get("status") is not None:
                check_transition(current._mapping["status"], values["status"])
            await conn.execute(update(cases_table).where(cases_table.c.id == case_id).values(**values))
            row = (await conn.execute(select(cases_table).where(cases_table.c.id == case_id))).first()
        return dict(row._mapping)

    # ── Pre-qualification leads ─────────────────────────────────────

    async def create_prequal_lead(self, record: dict[str, Any]) -> dict[str, Any]:
        row = {
            "id": str(uuid4()),
            "year": int(record["year"]),
            "make": record["make"],
            "model": record["model"],
            "mileage": int(record["mileage"]),
            "state": record["state"],
            "fault": record["fault"],
            "pre_accident_value": record.get("pre_accident_value"),
            "estimate_min": record["estimate_min"],
            "estimate_max": record["estimate_max"],
            "qualified": bool(record["qualified"]),
            "converted_to_case_id": record.get("converted_to_case_id"),
            "created_at": _now(),
        }
        _normalize_money(row, ("pre_accident_value", "estimate_min", "estimate_max"))
        return await self._insert(prequal_leads_table, row)

    async def get_prequal_lead(self, lead_id: str) -> dict[str, Any] | None:
        return await self._get_where(prequal_leads_table, "id", lead_id)

    async def mark_lead_converted(self, lead_id: str, case_id: str) -> None:
        if self.engine is None:
            for row in self._mem[prequal_leads_table.name]:
                if row["id"] == lead_id:
                    row["converted_to_case_id"] = case_id
            return
        async with self.engine.begin() as conn:
            await conn.execute(
                update(prequal_leads_table)
                .where(prequal_leads_table.c.id == lead_id)
                .values(converted_to_case_id=case_id)
            )

    # ── Wizard submissions ──────────────────────────────────────────

    async def create_wizard_appraisal(self, record: dict[str, Any]) -> dict[str, Any]:
        row: dict[str, Any] = {c.name: None for c in wizard_appraisals_table.columns}
        row.update({k: v for k, v in record.items() if k in row})
        row["other_driver_at_fault"] = bool(row["other_driver_at_fault"])
        row["repair_estimate_uploaded"] = bool(row["repair_estimate_uploaded"])
        row["guarantee_eligible"] = bool(row["guarantee_eligible"])
        row["payment_status"] = row["payment_status"] or "pending"
        row.update({"id": str(uuid4()), "created_at": _now()})
        return await self._insert(wizard_appraisals_table, row)

    async def get_wizard_appraisal(self, appraisal_id: str) -> dict[str, Any] | None:
        return await self._get_where(wizard_appraisals_table, "id", appraisal_id)

    # ── Chat ────────────────────────────────────────────────────────

    async def add_chat_message(self, *, case_id: str, role: str, content: str) -> dict[str, Any]:
        row = {"id": str(uuid4()), "case_id": case_id, "role": role, "content": content, "created_at": _now()}
        return await self._insert(chat_messages_table, row)

    async def get_chat_messages(self, case_id: str, limit: int = 100) -> list[dict[str, Any]]:
        if self.engine is None:
            return [dict(r) for r in self._mem[chat_messages_table.name] if r["case_id"] == case_id][:limit]
        stmt = (
            select(chat_messages_table)
            .where(chat_messages_table.c.case_id == case_id)
            .order_by(chat_messages_table.c.created_at.asc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]
