"""ResponseBuilder — accumulates a response and flushes it exactly once."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from http.cookies import SimpleCookie
from typing import Any, Literal

from starlette.responses import Response
from starlette.types import Receive, Scope, Send

_JSON_CONTENT_TYPE = "application/json; charset=utf-8"


class ResponseBuilder:
    """Mutable response under construction.

    Headers are case-insensitive and keep the name and position of their
    first insertion; setting a header again replaces only its value. ``send`` is write-once: the second call
    is a no-op.
    """

    def __init__(
        self,
        content: bytes | str = b"",
        status_code: int = 200,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = content.encode("utf-8") if isinstance(content, str) else content
        self._headers: dict[str, tuple[str, str]] = {}
        self.cookies: list[str] = []
        self._sent = False
        for name, value in (headers or {}).items():
            self.header(name, value)

    # -- constructors --

    @classmethod
    def make(cls, content: bytes | str = b"", status_code: int = 200) -> ResponseBuilder:
        return cls(content, status_code)

    @classmethod
    def json(
        cls,
        data: Any,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
    ) -> ResponseBuilder:
        response = cls(
            json.dumps(data, ensure_ascii=False, separators=(",", ":")),
            status_code,
            headers,
        )
        response.header("Content-Type", _JSON_CONTENT_TYPE)
        return response

    @classmethod
    def error(
        cls,
        message: str,
        status_code: int = 400,
        errors: dict[str, Any] | None = None,
    ) -> ResponseBuilder:
        payload: dict[str, Any] = {
            "status": "error",
            "message": message,
            "code": status_code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if errors:
            payload["errors"] = errors
        return cls.json(payload, status_code)

    @classmethod
    def unauthorized(cls, message: str = "Unauthorized") -> ResponseBuilder:
        return cls.error(message, 401)

    @classmethod
    def forbidden(cls, message: str = "Forbidden") -> ResponseBuilder:
        return cls.error(message, 403)

    @classmethod
    def rate_limited(cls, message: str, retry_after: int) -> ResponseBuilder:
        return cls.error(message, 429).header("Retry-After", str(retry_after))

    # -- mutation --

    def header(self, name: str, value: str) -> ResponseBuilder:
        key = name.lower()
        if key == "set-cookie":
            self.cookies.append(value)
        else:
            original = self._headers.get(key)
            self._headers[key] = (original[0] if original else name, value)
        return self

    def with_headers(self, headers: dict[str, str]) -> ResponseBuilder:
        for name, value in headers.items():
            self.header(name, value)
        return self

    def remove_header(self, name: str) -> ResponseBuilder:
        self._headers.pop(name.lower(), None)
        return self

    def set_cookie(
        self,
        key: str,
        value: str = "",
        *,
        max_age: int | None = None,
        path: str | None = "/",
        domain: str | None = None,
        secure: bool = False,
        httponly: bool = False,
        samesite: Literal["lax", "strict", "none"] | None = "lax",
    ) -> ResponseBuilder:
        cookie: SimpleCookie = SimpleCookie()
        cookie[key] = value
        if max_age is not None:
            cookie[key]["max-age"] = max_age
        if path is not None:
            cookie[key]["path"] = path
        if domain is not None:
            cookie[key]["domain"] = domain
        if secure:
            cookie[key]["secure"] = True
        if httponly:
            cookie[key]["httponly"] = True
        if samesite is not None:
            cookie[key]["samesite"] = samesite
        self.cookies.append(cookie.output(header="").strip())
        return self

    # -- inspection --

    def get_header(self, name: str, default: str | None = None) -> str | None:
        entry = self._headers.get(name.lower())
        return entry[1] if entry is not None else default

    @property
    def headers(self) -> dict[str, str]:
        return {name: value for name, value in self._headers.values()}

    @property
    def sent(self) -> bool:
        return self._sent

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    # -- finalization --

    def to_response(self) -> Response:
        headers = {
            name: value
            for key, (name, value) in self._headers.items()
            if key != "content-length"
        }
        response = Response(
            content=self.body, status_code=self.status_code, headers=headers
        )
        for cookie in self.cookies:
            response.raw_headers.append(
                (b"set-cookie", cookie.encode("latin-1"))
            )
        return response

    async def send(self, scope: Scope, receive: Receive, send: Send) -> bool:
        """Flush the response to the ASGI server. Returns False if already sent."""
        if self._sent:
            return False
        self._sent = True
        await self.to_response()(scope, receive, send)
        return True

    def __repr__(self) -> str:
        return f"ResponseBuilder(status_code={self.status_code}, sent={self._sent})"
