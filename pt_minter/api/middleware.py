"""HTTP middleware and request guards for the minter API.

Provides:
- Token-bucket rate limiting per client and route group
- Request id propagation into structlog context
- Admin token check for reconciliation endpoints
- CORS configuration helper
"""

from __future__ import annotations

import hmac
import math
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog
from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from pt_minter.api.metrics import RATE_LIMIT_REJECTIONS

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

# Probes and scrapes are never limited
_UNLIMITED_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


@dataclass
class TokenBucket:
    """Token bucket refilled continuously at ``refill_rate`` tokens per second."""

    capacity: float
    refill_rate: float
    tokens: float = field(init=False)
    updated_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.tokens = self.capacity

    def _refill(self, now: float) -> None:
        self.tokens = min(self.capacity, self.tokens + (now - self.updated_at) * self.refill_rate)
        self.updated_at = now

    def take(self) -> bool:
        self._refill(time.monotonic())
        if self.tokens < 1.0:
            return False
        self.tokens -= 1.0
        return True

    def wait_time(self) -> float:
        """Seconds until the next token is available."""
        if self.tokens >= 1.0:
            return 0.0
        if self.refill_rate <= 0:
            return float("inf")
        return (1.0 - self.tokens) / self.refill_rate


class RateLimiter:
    """Per-client token buckets, one per route group.

    A route group is the longest configured path prefix a request matches, or
    the default group. Keying on the group rather than the full path means
    ``/v1/nonce/0xA`` and ``/v1/nonce/0xB`` draw from the same bucket.
    The least recently used buckets are evicted once ``max_clients`` is hit.
    """

    def __init__(
        self,
        default_capacity: float = 30,
        default_rate: float = 5,
        max_clients: int = 10_000,
    ) -> None:
        self._default = (default_capacity, default_rate)
        self._groups: dict[str, tuple[float, float]] = {}
        self._buckets: OrderedDict[tuple[str, str], TokenBucket] = OrderedDict()
        self._max_clients = max_clients

    def set_path_limit(self, prefix: str, capacity: float, rate: float) -> None:
        self._groups[prefix] = (capacity, rate)

    def _group_for(self, path: str) -> str:
        matches = [p for p in self._groups if path.startswith(p)]
        return max(matches, key=len) if matches else ""

    def bucket(self, client: str, path: str) -> TokenBucket:
        group = self._group_for(path)
        key = (client, group)
        found = self._buckets.get(key)
        if found is not None:
            self._buckets.move_to_end(key)
            return found
        capacity, rate = self._groups.get(group, self._default)
        created = self._buckets[key] = TokenBucket(capacity=capacity, refill_rate=rate)
        while len(self._buckets) > self._max_clients:
            self._buckets.popitem(last=False)
        return created

    def allow(self, client: str, path: str) -> bool:
        return self.bucket(client, path).take()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Answers 429 with a Retry-After hint once a client's bucket is empty."""

    def __init__(self, app: object, limiter: RateLimiter) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._limiter = limiter

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if request.method == "OPTIONS" or path in _UNLIMITED_PATHS:
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        bucket = self._limiter.bucket(client, path)
        if bucket.take():
            return await call_next(request)

        RATE_LIMIT_REJECTIONS.inc()
        retry_after = max(1, math.ceil(min(bucket.wait_time(), 3600.0)))
        log.warning("rate_limited", client_ip=client, path=path, retry_after=retry_after)
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests"},
            headers={"Retry-After": str(retry_after)},
        )


# ---------------------------------------------------------------------------
# Request IDs
# ---------------------------------------------------------------------------


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Echo or assign X-Request-ID and bind it to every log line of the request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", "")[:128] or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# Admin auth
# ---------------------------------------------------------------------------


def require_admin_token(request: Request, expected: str) -> None:
    """Reject the request unless X-Admin-Token matches ``expected``.

    An empty ``expected`` disables the guarded endpoints entirely.
    """
    if not expected:
        raise HTTPException(status_code=403, detail="Admin endpoints disabled")
    supplied = request.headers.get("X-Admin-Token", "")
    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        log.warning("admin_auth_failed", path=request.url.path)
        raise HTTPException(status_code=401, detail="Invalid admin token")


def get_cors_origins(env_value: str = "", environment: str = "") -> list[str]:
    """Parse CORS origins from environment variable.

    Returns ["*"] when unset. Browser wallets call the mint endpoint
    directly, so an explicit list is recommended in production.
    """
    if not env_value:
        if environment == "production":
            log.warning("cors_wildcard", msg="CORS_ORIGINS not set in production: using wildcard.")
        return ["*"]
    return [o.strip() for o in env_value.split(",") if o.strip()]
