"""Shared pytest fixtures for fastapi-policy-pipeline tests."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import pytest

from fastapi_policy_pipeline.context import RequestContext
from fastapi_policy_pipeline.response import ResponseBuilder


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemorySink:
    """Access-log sink collecting records in a list."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    def write(self, record: dict[str, Any]) -> None:
        self.records.append(record)


@pytest.fixture
def make_ctx() -> Any:
    """Factory for RequestContext objects."""

    def _make(
        method: str = "GET",
        path: str = "/",
        headers: dict[str, str] | None = None,
        body: bytes = b"",
        client_ip: str = "10.0.0.1",
        query_string: str = "",
    ) -> RequestContext:
        return RequestContext(
            method=method,
            path=path,
            headers=headers or {},
            body=body,
            client_ip=client_ip,
            query_string=query_string,
        )

    return _make


@pytest.fixture
def terminal() -> AsyncMock:
    """Terminal handler returning a plain 200 response."""
    return AsyncMock(side_effect=lambda ctx: ResponseBuilder.json({"ok": True}))


@pytest.fixture
def sample_claims() -> dict[str, Any]:
    return {
        "user_id": 42,
        "email": "test@example.com",
        "roles": ["editor"],
        "permissions": ["posts.read", "posts.write"],
    }


@pytest.fixture
def verifier(sample_claims: dict[str, Any]) -> AsyncMock:
    """AuthVerifier double accepting only the token 'valid'."""

    async def _verify(token: str) -> Any:
        return sample_claims if token == "valid" else None

    mock = AsyncMock()
    mock.verify = AsyncMock(side_effect=_verify)
    return mock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()
