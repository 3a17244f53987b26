"""Tests for RequestContext and RouteParams."""

from __future__ import annotations

import dataclasses
import json
from typing import Any

import pytest
from starlette.requests import Request

from fastapi_policy_pipeline.context import HttpMethod, RequestContext, RouteParams


def _starlette_request(
    method: str = "POST",
    path: str = "/items",
    headers: dict[str, str] | None = None,
    body: bytes = b"",
    client: tuple[str, int] | None = ("203.0.113.7", 5000),
    query_string: str = "",
) -> Request:
    scope: dict[str, Any] = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": query_string.encode(),
        "headers": [
            (k.lower().encode(), v.encode()) for k, v in (headers or {}).items()
        ],
        "root_path": "",
        "client": client,
        "scheme": "http",
        "server": ("testserver", 80),
    }

    async def receive() -> dict[str, Any]:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


class TestRequestContext:
    def test_method_string_is_coerced(self, make_ctx: Any) -> None:
        assert make_ctx(method="post").method is HttpMethod.POST

    def test_unknown_method_rejected(self) -> None:
        with pytest.raises(ValueError):
            RequestContext(method="BREW")

    def test_headers_are_case_insensitive(self, make_ctx: Any) -> None:
        ctx = make_ctx(headers={"X-Custom-Header": "value"})
        assert ctx.header("x-custom-header") == "value"
        assert ctx.header("X-CUSTOM-HEADER") == "value"

    def test_is_frozen(self, make_ctx: Any) -> None:
        ctx = make_ctx()
        with pytest.raises(dataclasses.FrozenInstanceError):
            ctx.path = "/other"

    def test_uri_includes_query(self, make_ctx: Any) -> None:
        ctx = make_ctx(path="/search", query_string="q=abc&page=2")
        assert ctx.uri == "/search?q=abc&page=2"
        assert ctx.query["page"] == "2"

    def test_cookies_parsed(self, make_ctx: Any) -> None:
        ctx = make_ctx(headers={"Cookie": "session=abc; csrf_token=xyz"})
        assert ctx.cookies == {"session": "abc", "csrf_token": "xyz"}

    def test_json_body(self, make_ctx: Any) -> None:
        ctx = make_ctx(body=json.dumps({"a": 1}).encode())
        assert ctx.json() == {"a": 1}

    def test_invalid_json_body_is_none(self, make_ctx: Any) -> None:
        assert make_ctx(body=b"{not json").json() is None

    def test_form_body_and_input(self, make_ctx: Any) -> None:
        ctx = make_ctx(
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            body=b"_token=abc&name=x",
            query_string="page=3",
        )
        assert ctx.form() == {"_token": "abc", "name": "x"}
        assert ctx.input("_token") == "abc"
        assert ctx.input("page") == "3"
        assert ctx.input("missing", "d") == "d"

    def test_form_requires_urlencoded_content_type(self, make_ctx: Any) -> None:
        assert make_ctx(body=b"_token=abc").form() == {}

    def test_identity_none_until_attached(self, make_ctx: Any) -> None:
        assert make_ctx().identity is None

    async def test_from_request(self) -> None:
        request = _starlette_request(
            headers={"User-Agent": "pytest"}, body=b'{"x": 1}', query_string="a=1"
        )
        ctx = await RequestContext.from_request(request)
        assert ctx.method is HttpMethod.POST
        assert ctx.path == "/items"
        assert ctx.client_ip == "203.0.113.7"
        assert ctx.user_agent == "pytest"
        assert ctx.body == b'{"x": 1}'
        assert ctx.query_string == "a=1"

    async def test_from_request_falls_back_to_forwarded_for(self) -> None:
        request = _starlette_request(
            client=None, headers={"X-Forwarded-For": "198.51.100.1, 10.0.0.1"}
        )
        ctx = await RequestContext.from_request(request)
        assert ctx.client_ip == "198.51.100.1"


class TestRouteParams:
    def test_add_and_replace(self) -> None:
        params = RouteParams({"a": 1})
        params["b"] = 2
        params["a"] = 3
        assert dict(params) == {"a": 3, "b": 2}

    def test_no_removal_api(self) -> None:
        params = RouteParams({"a": 1})
        with pytest.raises(TypeError, match="additive-only"):
            del params["a"]
        assert params["a"] == 1
        assert not hasattr(params, "pop")
        assert not hasattr(params, "clear")

    def test_update(self) -> None:
        params = RouteParams()
        params.update({"x": 1, "y": 2})
        assert len(params) == 2
