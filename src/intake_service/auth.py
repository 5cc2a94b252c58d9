"""Partner API keys and per-client request budgets.

``API_KEYS`` holds comma-separated entries, either ``name:key`` or a bare
key. The name identifies the calling partner (a body-shop portal, the CRM
sync) in logs; bare keys are named ``client-<n>``. Only SHA-256 digests of
the keys are kept in memory.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import time
from collections import defaultdict, deque
from typing import Any

from fastapi import HTTPException, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def parse_api_keys(raw: str) -> dict[str, str]:
    """``"crm:abc, def"`` -> ``{"crm": "abc", "client-2": "def"}``."""
    keys: dict[str, str] = {}
    for i, entry in enumerate((e.strip() for e in raw.split(",")), start=1):
        if not entry:
            continue
        name, sep, key = entry.partition(":")
        if not sep:
            name, key = f"client-{i}", entry
        if key.strip():
            keys[name.strip() or f"client-{i}"] = key.strip()
    return keys


class PartnerKeyAuth:
    """FastAPI dependency resolving the calling partner from ``X-API-Key``.

    Open (returns ``None``) when no keys are configured.
    """

    def __init__(self, keys: dict[str, str] | None = None) -> None:
        self._partners = {self._digest(key): name for name, key in (keys or {}).items()}

    @property
    def enabled(self) -> bool:
        return bool(self._partners)

    @staticmethod
    def _digest(key: str) -> str:
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def identify(self, api_key: str | None) -> str | None:
        if not api_key:
            return None
        candidate = self._digest(api_key)
        for digest, name in self._partners.items():
            if hmac.compare_digest(candidate, digest):
                return name
        return None

    async def __call__(self, api_key: str | None = Security(_api_key_header)) -> str | None:
        if not self.enabled:
            return None
        partner = self.identify(api_key)
        if partner is None:
            logger.warning("Rejected request with unknown API key")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")
        return partner


class RateLimiter:
    """Sliding one-minute window per client address.

    Public intake routes (estimates, wizard submissions) are the ones exposed
    to anonymous traffic, so they draw from a separate, usually smaller budget.
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        requests_per_minute: int = 60,
        public_requests_per_minute: int | None = None,
        public_prefixes: tuple[str, ...] = ("/estimate", "/prequal", "/wizard"),
    ) -> None:
        self.rpm = requests_per_minute
        self.public_rpm = requests_per_minute if public_requests_per_minute is None else public_requests_per_minute
        self.public_prefixes = public_prefixes
        self._hits: dict[tuple[str, str], deque[float]] = defaultdict(deque)

    def _budget(self, path: str) -> tuple[str, int]:
        if path.startswith(self.public_prefixes):
            return "public", self.public_rpm
        return "api", self.rpm

    def retry_after(self, client: str, path: str = "/", now: float | None = None) -> int:
        """Seconds until ``client`` may call ``path`` again; 0 when allowed now.

        An allowed call is counted against the budget.
        """
        bucket, limit = self._budget(path)
        if limit <= 0:
            return 0
        now = time.monotonic() if now is None else now
        hits = self._hits[(client, bucket)]
        while hits and hits[0] <= now - self.WINDOW_SECONDS:
            hits.popleft()
        if len(hits) >= limit:
            return max(1, math.ceil(hits[0] + self.WINDOW_SECONDS - now))
        hits.append(now)
        return 0

    async def middleware(self, request: Request, call_next: Any) -> Any:
        client = request.client.host if request.client else "unknown"
        wait = self.retry_after(client, request.url.path)
        if wait:
            logger.info("Rate limit exceeded", extra={"client": client, "path": request.url.path})
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded"},
                headers={"Retry-After": str(wait)},
            )
        return await call_next(request)
