"""RequestContext — per-request snapshot passed through the pipeline."""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl

from starlette.datastructures import Headers, QueryParams
from starlette.requests import Request, cookie_parser

if TYPE_CHECKING:
    from fastapi_policy_pipeline.policies.auth import AuthResult

AUTHENTICATED_USER = "authenticated_user"


class HttpMethod(str, Enum):
    GET = "GET"
    HEAD = "HEAD"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    OPTIONS = "OPTIONS"
    TRACE = "TRACE"
    CONNECT = "CONNECT"


class RouteParams(Mapping[str, Any]):
    """Additive-only bag of facts computed while a request is in flight.

    Entries can be added or replaced but never removed.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        raise TypeError("RouteParams is additive-only")

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def update(self, values: Mapping[str, Any]) -> None:
        self._data.update(values)

    def __repr__(self) -> str:
        return f"RouteParams({self._data!r})"


@dataclass(frozen=True)
class RequestContext:
    """Immutable view of an inbound request plus an additive params bag."""

    method: HttpMethod
    path: str = "/"
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""
    client_ip: str = "unknown"
    query_string: str = ""
    params: RouteParams = field(default_factory=RouteParams)

    def __post_init__(self) -> None:
        if not isinstance(self.method, HttpMethod):
            object.__setattr__(self, "method", HttpMethod(str(self.method).upper()))
        if not isinstance(self.headers, Headers):
            object.__setattr__(self, "headers", Headers(headers=dict(self.headers)))
        if not isinstance(self.params, RouteParams):
            object.__setattr__(self, "params", RouteParams(self.params))

    @classmethod
    async def from_request(cls, request: Request) -> RequestContext:
        """Snapshot a Starlette request, reading its body once."""
        body = await request.body()
        return cls(
            method=HttpMethod(request.method.upper()),
            path=request.url.path,
            headers=request.headers,
            body=body,
            client_ip=_client_ip(request),
            query_string=request.url.query,
        )

    @property
    def uri(self) -> str:
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path

    @property
    def query(self) -> QueryParams:
        return QueryParams(self.query_string)

    @property
    def user_agent(self) -> str | None:
        return self.headers.get("user-agent")

    @property
    def cookies(self) -> dict[str, str]:
        return cookie_parser(self.headers.get("cookie", ""))

    @property
    def identity(self) -> AuthResult | None:
        """Identity attached by AuthPolicy, if the request was authenticated."""
        return self.params.get(AUTHENTICATED_USER)

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name, default)

    def json(self) -> Any | None:
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError:
            return None

    def form(self) -> dict[str, str]:
        content_type = self.headers.get("content-type", "")
        if not content_type.startswith("application/x-www-form-urlencoded"):
            return {}
        return dict(parse_qsl(self.body.decode("latin-1"), keep_blank_values=True))

    def input(self, name: str, default: Any = None) -> Any:
        """Look a field up in the form body, then the query string."""
        form = self.form()
        if name in form:
            return form[name]
        return self.query.get(name, default)


def _client_ip(request: Request) -> str:
    client = request.client
    if client is not None and client.host:
        return client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"
