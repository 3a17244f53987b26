"""Tests for RateLimitPolicy and the counter stores."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from fastapi_policy_pipeline.context import AUTHENTICATED_USER
from fastapi_policy_pipeline.exceptions import ConfigurationError
from fastapi_policy_pipeline.policies.auth import AuthResult
from fastapi_policy_pipeline.policies.rate_limit import (
    InMemoryRateLimitStore,
    RateLimitPolicy,
    RateLimitStore,
    RedisRateLimitStore,
)

BEARER = {"Authorization": "Bearer valid"}


class _BrokenStore:
    async def hit(self, key: str, limit: int, window_seconds: int, now: float) -> Any:
        raise ConnectionError("store unreachable")

    async def get(self, key: str) -> Any:
        return None

    async def reset(self, key: str) -> None:
        return None


class TestInMemoryStore:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryRateLimitStore(), RateLimitStore)

    async def test_counts_up_to_limit(self) -> None:
        store = InMemoryRateLimitStore()
        decisions = [await store.hit("k", 3, 60, 100.0) for _ in range(4)]
        assert [d.accepted for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]

    async def test_window_expiry_starts_fresh(self) -> None:
        store = InMemoryRateLimitStore()
        await store.hit("k", 1, 60, 100.0)
        assert not (await store.hit("k", 1, 60, 159.0)).accepted
        fresh = await store.hit("k", 1, 60, 160.0)
        assert fresh.accepted
        assert fresh.window_start == 160.0

    async def test_get_returns_copy(self) -> None:
        store = InMemoryRateLimitStore()
        await store.hit("k", 5, 60, 100.0)
        record = await store.get("k")
        assert record is not None
        record.count = 99
        assert (await store.get("k")).count == 1  # type: ignore[union-attr]

    async def test_reset_and_purge(self) -> None:
        store = InMemoryRateLimitStore()
        await store.hit("a", 5, 60, 100.0)
        await store.hit("b", 5, 10, 100.0)
        await store.reset("a")
        assert await store.get("a") is None
        assert store.purge_expired(now=120.0) == 1
        assert await store.get("b") is None

    def test_concurrent_threads_never_exceed_limit(self) -> None:
        store = InMemoryRateLimitStore()
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(
                pool.map(lambda _: store.hit_sync("k", 10, 60, 100.0), range(200))
            )
        assert sum(r.accepted for r in results) == 10

    async def test_concurrent_tasks_never_exceed_limit(self) -> None:
        store = InMemoryRateLimitStore()
        results = await asyncio.gather(
            *(store.hit("k", 1, 60, 100.0) for _ in range(50))
        )
        assert sum(r.accepted for r in results) == 1

    async def test_expired_keys_are_swept_on_hit(self) -> None:
        store = InMemoryRateLimitStore()
        for i in range(1000):
            await store.hit(f"client-{i}", 5, 1, 100.0 + 10 * i)
        assert len(store) == 1

    async def test_sweep_keeps_active_windows(self) -> None:
        store = InMemoryRateLimitStore()
        await store.hit("long", 5, 60, 100.0)
        await store.hit("short", 5, 1, 100.0)
        await store.hit("other", 5, 1, 102.0)
        assert await store.get("long") is not None
        assert await store.get("short") is None
        assert len(store) == 2


class TestRedisStore:
    def _client(self, script_result: list[Any]) -> MagicMock:
        client = MagicMock()
        client.register_script.return_value = AsyncMock(return_value=script_result)
        client.hmget = AsyncMock(return_value=[b"100.0", b"3", b"60"])
        client.delete = AsyncMock()
        client.aclose = AsyncMock()
        return client

    async def test_hit_runs_script(self) -> None:
        client = self._client([1, 2, b"100.0"])
        store = RedisRateLimitStore(client)

        decision = await store.hit("api:ip:x", 5, 60, 101.5)

        client.register_script.assert_called_once()
        script = client.register_script.return_value
        script.assert_awaited_once_with(keys=["api:ip:x"], args=["101.5", 5, 60])
        assert decision.accepted is True
        assert decision.count == 2
        assert decision.window_start == 100.0
        assert decision.remaining == 3

    async def test_rejected_decision(self) -> None:
        store = RedisRateLimitStore(self._client([0, 5, b"100.0"]))
        decision = await store.hit("k", 5, 60, 130.0)
        assert decision.accepted is False
        assert decision.retry_after == 30

    async def test_get_reset_close(self) -> None:
        client = self._client([1, 1, b"0"])
        store = RedisRateLimitStore(client)

        record = await store.get("k")
        assert record is not None
        assert (record.count, record.window_seconds) == (3, 60)

        await store.reset("k")
        client.delete.assert_awaited_once_with("k")
        await store.close()
        client.aclose.assert_awaited_once()

    async def test_get_missing(self) -> None:
        client = self._client([1, 1, b"0"])
        client.hmget = AsyncMock(return_value=[None, None, None])
        assert await RedisRateLimitStore(client).get("k") is None


class TestRateLimitPolicy:
    def test_default_priority(self) -> None:
        assert RateLimitPolicy().priority == 20

    @pytest.mark.parametrize("options", [{"max_attempts": 0}, {"window_seconds": -1}])
    def test_invalid_config(self, options: dict[str, Any]) -> None:
        with pytest.raises(ConfigurationError):
            RateLimitPolicy(**options)

    async def test_limit_then_reject_then_reset(
        self, make_ctx: Any, terminal: AsyncMock, clock: Any
    ) -> None:
        policy = RateLimitPolicy(max_attempts=5, window_seconds=60, clock=clock)

        for _ in range(5):
            response = await policy.execute(make_ctx(), terminal)
            assert response.status_code == 200

        rejected = await policy.execute(make_ctx(), terminal)
        assert rejected.status_code == 429
        assert int(rejected.get_header("Retry-After")) > 0
        assert rejected.get_header("X-RateLimit-Limit") is None
        assert terminal.await_count == 5

        clock.advance(60)
        assert (await policy.execute(make_ctx(), terminal)).status_code == 200

    async def test_headers_reflect_post_increment_state(
        self, make_ctx: Any, terminal: AsyncMock, clock: Any
    ) -> None:
        policy = RateLimitPolicy(max_attempts=3, window_seconds=60, clock=clock)
        first = await policy.execute(make_ctx(), terminal)
        second = await policy.execute(make_ctx(), terminal)

        assert first.get_header("X-RateLimit-Limit") == "3"
        assert first.get_header("X-RateLimit-Remaining") == "2"
        assert second.get_header("X-RateLimit-Remaining") == "1"
        assert second.get_header("X-RateLimit-Reset") == str(int(clock.now) + 60)

    async def test_keys_are_per_ip_and_path(
        self, make_ctx: Any, terminal: AsyncMock, clock: Any
    ) -> None:
        policy = RateLimitPolicy(max_attempts=1, clock=clock)
        assert (await policy.execute(make_ctx(path="/a"), terminal)).status_code == 200
        assert (await policy.execute(make_ctx(path="/b"), terminal)).status_code == 200
        other_ip = make_ctx(path="/a", client_ip="10.0.0.2")
        assert (await policy.execute(other_ip, terminal)).status_code == 200
        assert (await policy.execute(make_ctx(path="/a"), terminal)).status_code == 429

    async def test_concurrent_requests_admit_exactly_limit(
        self, make_ctx: Any, terminal: AsyncMock, clock: Any
    ) -> None:
        policy = RateLimitPolicy(max_attempts=1, clock=clock)
        responses = await asyncio.gather(
            *(policy.execute(make_ctx(), terminal) for _ in range(20))
        )
        statuses = sorted(r.status_code for r in responses)
        assert statuses.count(200) == 1
        assert statuses.count(429) == 19

    async def test_store_error_fails_closed(
        self, make_ctx: Any, terminal: AsyncMock
    ) -> None:
        policy = RateLimitPolicy(_BrokenStore())
        response = await policy.execute(make_ctx(), terminal)
        assert response.status_code == 500
        terminal.assert_not_awaited()

    async def test_store_error_fail_open(
        self, make_ctx: Any, terminal: AsyncMock
    ) -> None:
        policy = RateLimitPolicy(_BrokenStore(), fail_open=True)
        response = await policy.execute(make_ctx(), terminal)
        assert response.status_code == 200
        assert response.get_header("X-RateLimit-Limit") is None

    async def test_store_timeout(self, make_ctx: Any, terminal: AsyncMock) -> None:
        class SlowStore(_BrokenStore):
            async def hit(self, *args: Any) -> Any:
                await asyncio.sleep(1)

        policy = RateLimitPolicy(SlowStore(), store_timeout=0.01)
        response = await policy.execute(make_ctx(), terminal)
        assert response.status_code == 500

    async def test_remaining_and_reset_time(
        self, make_ctx: Any, terminal: AsyncMock, clock: Any
    ) -> None:
        policy = RateLimitPolicy(max_attempts=4, window_seconds=30, clock=clock)
        key = policy.signature(make_ctx(), None)
        assert await policy.remaining(key, 4) == 4
        assert await policy.reset_time(key) == 0

        await policy.execute(make_ctx(), terminal)
        clock.advance(10)
        assert await policy.remaining(key, 4) == 3
        assert await policy.reset_time(key) == 20


class TestUserBasedLimits:
    async def test_authenticated_user_keyed_by_subject(
        self, make_ctx: Any, verifier: AsyncMock, terminal: AsyncMock
    ) -> None:
        policy = RateLimitPolicy.for_user(
            authenticated_limit=2, anonymous_limit=1, verifier=verifier
        )

        ctx = make_ctx(headers=BEARER)
        assert (await policy.execute(ctx, terminal)).status_code == 200
        from_other_ip = make_ctx(headers=BEARER, client_ip="10.9.9.9")
        assert (await policy.execute(from_other_ip, terminal)).status_code == 200
        assert (await policy.execute(make_ctx(headers=BEARER), terminal)).status_code == 429

    def test_signature_prefers_subject(self, make_ctx: Any) -> None:
        policy = RateLimitPolicy(user_based=True, key_prefix="web")
        identity = AuthResult(subject="42")
        assert policy.signature(make_ctx(), identity) == "web:user:42"
        assert policy.signature(make_ctx(), None).startswith("web:ip:")

    def test_ip_mode_ignores_identity(self, make_ctx: Any) -> None:
        policy = RateLimitPolicy()
        assert policy.signature(make_ctx(), AuthResult(subject="42")).startswith("api:ip:")

    def test_anonymous_and_authenticated_defaults(self) -> None:
        policy = RateLimitPolicy(user_based=True, max_attempts=10)
        assert policy.limit_for(None) == 10
        assert policy.limit_for(AuthResult(subject="1")) == 20

    def test_role_limits_take_highest_match(self) -> None:
        policy = RateLimitPolicy.for_role({"admin": 1000, "premium": 300}, default_limit=50)
        assert policy.limit_for(AuthResult(subject="1", roles=frozenset({"premium"}))) == 300
        both = AuthResult(subject="1", roles=frozenset({"premium", "admin"}))
        assert policy.limit_for(both) == 1000
        assert policy.limit_for(AuthResult(subject="1", roles=frozenset({"x"}))) == 100
        assert policy.limit_for(None) == 50

    async def test_uses_identity_attached_upstream(
        self, make_ctx: Any, terminal: AsyncMock
    ) -> None:
        store = InMemoryRateLimitStore()
        policy = RateLimitPolicy(store, user_based=True)
        ctx = make_ctx()
        ctx.params[AUTHENTICATED_USER] = AuthResult(subject="7")

        await policy.execute(ctx, terminal)
        assert await store.get("api:user:7") is not None

    async def test_unverifiable_token_counts_as_anonymous(
        self, make_ctx: Any, verifier: AsyncMock, terminal: AsyncMock
    ) -> None:
        store = InMemoryRateLimitStore()
        policy = RateLimitPolicy(store, verifier=verifier, user_based=True)
        ctx = make_ctx(headers={"Authorization": "Bearer forged"})

        response = await policy.execute(ctx, terminal)
        assert response.status_code == 200
        key = policy.signature(ctx, None)
        assert await store.get(key) is not None

    async def test_custom_token_header(
        self, make_ctx: Any, verifier: AsyncMock, terminal: AsyncMock
    ) -> None:
        store = InMemoryRateLimitStore()
        policy = RateLimitPolicy(
            store,
            verifier=verifier,
            user_based=True,
            token_header="X-Api-Token",
            token_prefix="Token ",
        )
        ctx = make_ctx(headers={"X-Api-Token": "Token valid"})

        await policy.execute(ctx, terminal)
        assert await store.get("api:user:42") is not None


class TestRateLimitClose:
    async def test_aclose_closes_store(self) -> None:
        store = MagicMock(close=AsyncMock())
        await RateLimitPolicy(store).aclose()
        store.close.assert_awaited_once()

    async def test_aclose_without_closable_store(self) -> None:
        await RateLimitPolicy(InMemoryRateLimitStore()).aclose()
