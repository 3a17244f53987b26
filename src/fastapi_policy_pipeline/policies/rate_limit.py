"""Rate limiting — RateLimitPolicy and fixed-window counter stores."""

from __future__ import annotations

import asyncio
import hashlib
import math
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

from fastapi_policy_pipeline._types import Clock, Handler
from fastapi_policy_pipeline.config import RateLimitConfig, build_config
from fastapi_policy_pipeline.context import RequestContext
from fastapi_policy_pipeline.middleware import Middleware
from fastapi_policy_pipeline.policies.auth import AuthResult, AuthVerifier, extract_token
from fastapi_policy_pipeline.response import ResponseBuilder

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitRecord:
    """Fixed-window counter state for one key."""

    key: str
    window_start: float
    count: int
    window_seconds: int

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one atomic check-and-increment, taken after the increment."""

    key: str
    accepted: bool
    limit: int
    count: int
    window_start: float
    window_seconds: int
    now: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def reset_after(self) -> float:
        return max(0.0, self.window_start + self.window_seconds - self.now)

    @property
    def reset_at(self) -> int:
        return math.ceil(self.window_start + self.window_seconds)

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.reset_after))


@runtime_checkable
class RateLimitStore(Protocol):
    """Shared counter storage. ``hit`` must be atomic per key."""

    async def hit(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> RateLimitDecision: ...

    async def get(self, key: str) -> RateLimitRecord | None: ...

    async def reset(self, key: str) -> None: ...


class InMemoryRateLimitStore:
    """Process-local store.

    The whole read-check-increment runs under one lock with no suspension
    point, so it is atomic across both threads and tasks.
    """

    def __init__(self) -> None:
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    async def hit(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> RateLimitDecision:
        return self.hit_sync(key, limit, window_seconds, now)

    def hit_sync(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> RateLimitDecision:
        with self._lock:
            if now - self._last_sweep >= window_seconds:
                self._sweep(now)

            record = self._records.get(key)
            if record is None or record.expired(now):
                record = RateLimitRecord(
                    key=key, window_start=now, count=0, window_seconds=window_seconds
                )
                self._records[key] = record

            accepted = record.count < limit
            if accepted:
                record.count += 1

            return RateLimitDecision(
                key=key,
                accepted=accepted,
                limit=limit,
                count=record.count,
                window_start=record.window_start,
                window_seconds=record.window_seconds,
                now=now,
            )

    async def get(self, key: str) -> RateLimitRecord | None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            return RateLimitRecord(
                key=record.key,
                window_start=record.window_start,
                count=record.count,
                window_seconds=record.window_seconds,
            )

    async def reset(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def purge_expired(self, now: float | None = None) -> int:
        """Drop expired records; returns how many were removed."""
        now = time.time() if now is None else now
        with self._lock:
            return self._sweep(now)

    def __len__(self) -> int:
        return len(self._records)

    def _sweep(self, now: float) -> int:
        # caller holds the lock
        stale = [k for k, r in self._records.items() if r.expired(now)]
        for key in stale:
            del self._records[key]
        self._last_sweep = now
        return len(stale)


# KEYS[1] = counter key; ARGV = now, limit, window_seconds
_FIXED_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local window = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'window_start', 'count')
local window_start = tonumber(data[1])
local count = tonumber(data[2])

if window_start == nil or count == nil or now - window_start >= window then
  window_start = now
  count = 0
end

local accepted = 0
if count < limit then
  count = count + 1
  accepted = 1
end

redis.call('HSET', key, 'window_start', tostring(window_start), 'count', count,
           'window_seconds', window)
redis.call('EXPIRE', key, math.ceil(window - (now - window_start)) + 1)

return {accepted, count, tostring(window_start)}
"""


class RedisRateLimitStore:
    """Shared store backed by Redis; the counter update is a server-side script."""

    def __init__(self, client: Redis) -> None:
        self._client = client
        self._script = client.register_script(_FIXED_WINDOW_LUA)

    @classmethod
    def from_url(cls, url: str) -> RedisRateLimitStore:
        from redis.asyncio import Redis

        return cls(Redis.from_url(url))

    async def hit(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> RateLimitDecision:
        accepted, count, window_start = await self._script(
            keys=[key], args=[repr(now), limit, window_seconds]
        )
        return RateLimitDecision(
            key=key,
            accepted=bool(int(accepted)),
            limit=limit,
            count=int(count),
            window_start=float(window_start),
            window_seconds=window_seconds,
            now=now,
        )

    async def get(self, key: str) -> RateLimitRecord | None:
        window_start, count, window_seconds = await self._client.hmget(
            key, "window_start", "count", "window_seconds"
        )
        if window_start is None or count is None:
            return None
        return RateLimitRecord(
            key=key,
            window_start=float(window_start),
            count=int(count),
            window_seconds=int(window_seconds or 0),
        )

    async def reset(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()


class RateLimitPolicy(Middleware):
    """Fixed-window rate limiting keyed by caller signature.

    Runs after CORS and before authentication so abusive traffic is turned
    away before any costlier work happens.
    """

    priority = 20

    def __init__(
        self,
        store: RateLimitStore | None = None,
        *,
        verifier: AuthVerifier | None = None,
        config: RateLimitConfig | Mapping[str, Any] | None = None,
        clock: Clock = time.time,
        **options: Any,
    ) -> None:
        self.config = build_config(RateLimitConfig, config, options)
        if self.config.priority is not None:
            self.priority = self.config.priority
        self._store: RateLimitStore = (
            store if store is not None else InMemoryRateLimitStore()
        )
        self._verifier = verifier
        self._clock = clock
        self._params_key = f"rate_limit:{self.config.key_prefix}"

    @property
    def store(self) -> RateLimitStore:
        return self._store

    async def aclose(self) -> None:
        close = getattr(self._store, "close", None)
        if close is not None:
            await close()

    async def handle(self, ctx: RequestContext, next: Handler) -> ResponseBuilder:
        identity = await self._resolve_identity(ctx)
        key = self.signature(ctx, identity)
        limit = self.limit_for(identity)

        try:
            decision = await self._hit(key, limit)
        except Exception as exc:
            if not self.config.fail_open:
                raise
            logger.warning(
                "rate_limit_store_error", key=key, error=type(exc).__name__
            )
            return await next(ctx)

        ctx.params[self._params_key] = decision
        if not decision.accepted:
            logger.info("rate_limited", key=key, limit=limit)
            return ResponseBuilder.rate_limited(
                "Too many requests. Please try again later.", decision.retry_after
            )
        return await next(ctx)

    async def after(
        self, ctx: RequestContext, response: ResponseBuilder
    ) -> ResponseBuilder:
        decision: RateLimitDecision | None = ctx.params.get(self._params_key)
        if decision is None or not decision.accepted:
            return response
        return response.with_headers(
            {
                "X-RateLimit-Limit": str(decision.limit),
                "X-RateLimit-Remaining": str(decision.remaining),
                "X-RateLimit-Reset": str(decision.reset_at),
            }
        )

    def signature(self, ctx: RequestContext, identity: AuthResult | None) -> str:
        prefix = self.config.key_prefix
        if self.config.user_based and identity is not None and identity.subject:
            return f"{prefix}:user:{identity.subject}"
        digest = hashlib.sha1(f"{ctx.client_ip}|{ctx.path}".encode()).hexdigest()
        return f"{prefix}:ip:{digest}"

    def limit_for(self, identity: AuthResult | None) -> int:
        if not self.config.user_based:
            return self.config.max_attempts
        if identity is None or not identity.subject:
            return self.config.resolved_anonymous_limit
        role_limits = [
            limit
            for role, limit in self.config.role_limits.items()
            if role in identity.roles
        ]
        if role_limits:
            return max(role_limits)
        return self.config.resolved_authenticated_limit

    async def remaining(self, key: str, limit: int) -> int:
        record = await self._store.get(key)
        if record is None or record.expired(self._clock()):
            return limit
        return max(0, limit - record.count)

    async def reset_time(self, key: str) -> int:
        record = await self._store.get(key)
        now = self._clock()
        if record is None or record.expired(now):
            return 0
        return math.ceil(record.window_start + record.window_seconds - now)

    async def _hit(self, key: str, limit: int) -> RateLimitDecision:
        call = self._store.hit(key, limit, self.config.window_seconds, self._clock())
        if self.config.store_timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout=self.config.store_timeout)

    async def _resolve_identity(self, ctx: RequestContext) -> AuthResult | None:
        if not self.config.user_based:
            return None
        if ctx.identity is not None:
            return ctx.identity
        if self._verifier is None:
            return None

        token = extract_token(
            ctx, self.config.token_header, self.config.token_prefix
        )
        if token is None:
            return None
        try:
            claims = await self._verifier.verify(token)
        except Exception as exc:
            logger.debug("rate_limit_identity_unresolved", error=type(exc).__name__)
            return None
        if not claims:
            return None
        identity = AuthResult.from_claims(claims, self.config.user_id_claim)
        return identity if identity.subject else None

    @classmethod
    def for_ip(
        cls,
        max_attempts: int = 60,
        window_seconds: int = 60,
        *,
        store: RateLimitStore | None = None,
    ) -> RateLimitPolicy:
        return cls(store, max_attempts=max_attempts, window_seconds=window_seconds)

    @classmethod
    def for_user(
        cls,
        authenticated_limit: int = 120,
        anonymous_limit: int = 60,
        window_seconds: int = 60,
        *,
        store: RateLimitStore | None = None,
        verifier: AuthVerifier | None = None,
    ) -> RateLimitPolicy:
        return cls(
            store,
            verifier=verifier,
            max_attempts=anonymous_limit,
            window_seconds=window_seconds,
            user_based=True,
            authenticated_limit=authenticated_limit,
            anonymous_limit=anonymous_limit,
        )

    @classmethod
    def for_role(
        cls,
        role_limits: Mapping[str, int],
        default_limit: int = 60,
        window_seconds: int = 60,
        *,
        store: RateLimitStore | None = None,
        verifier: AuthVerifier | None = None,
    ) -> RateLimitPolicy:
        return cls(
            store,
            verifier=verifier,
            max_attempts=default_limit,
            window_seconds=window_seconds,
            user_based=True,
            authenticated_limit=default_limit * 2,
            anonymous_limit=default_limit,
            role_limits=dict(role_limits),
        )
