"""CSRF protection policy and the double-submit cookie collaborator."""

from __future__ import annotations

import hmac
import re
import secrets
from collections.abc import Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

import structlog

from fastapi_policy_pipeline._types import Handler
from fastapi_policy_pipeline.config import CsrfConfig, build_config
from fastapi_policy_pipeline.context import RequestContext
from fastapi_policy_pipeline.middleware import Middleware
from fastapi_policy_pipeline.response import ResponseBuilder

logger = structlog.get_logger(__name__)

PROTECTED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
CSRF_STATUS_CODE = 419
CSRF_ERROR_CODE = "CSRF_TOKEN_MISMATCH"


@runtime_checkable
class CsrfProtection(Protocol):
    def requires_protection(self, method: str) -> bool: ...

    async def verify_request(self, ctx: RequestContext) -> bool: ...


class DoubleSubmitCsrfProtection:
    """Compares the submitted token with the one stored in a cookie.

    The submitted token is looked up in the header, then the form field,
    then the same field of a JSON body.
    """

    TOKEN_BYTES = 32

    def __init__(
        self,
        *,
        cookie_name: str = "csrf_token",
        header_name: str = "X-CSRF-TOKEN",
        field_name: str = "_token",
    ) -> None:
        self.cookie_name = cookie_name
        self.header_name = header_name
        self.field_name = field_name

    @classmethod
    def generate_token(cls) -> str:
        return secrets.token_hex(cls.TOKEN_BYTES)

    def requires_protection(self, method: str) -> bool:
        return method.upper() in PROTECTED_METHODS

    def token_from_request(self, ctx: RequestContext) -> str | None:
        token = ctx.header(self.header_name)
        if token:
            return token

        token = ctx.form().get(self.field_name)
        if token:
            return token

        payload = ctx.json()
        if isinstance(payload, dict):
            value = payload.get(self.field_name)
            if isinstance(value, str) and value:
                return value
        return None

    async def verify_request(self, ctx: RequestContext) -> bool:
        expected = ctx.cookies.get(self.cookie_name)
        submitted = self.token_from_request(ctx)
        if not expected or not submitted:
            return False
        return hmac.compare_digest(expected.encode(), submitted.encode())


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Translate an exception glob: ``*`` matches anything, the rest is literal."""
    parts = (re.escape(part) for part in pattern.split("*"))
    return re.compile(".*".join(parts))


class CsrfPolicy(Middleware):
    """Rejects state-changing requests without a valid CSRF token (419)."""

    priority = 80

    def __init__(
        self,
        protection: CsrfProtection | None = None,
        config: CsrfConfig | Mapping[str, Any] | None = None,
        **options: Any,
    ) -> None:
        self.config = build_config(CsrfConfig, config, options)
        if self.config.priority is not None:
            self.priority = self.config.priority
        self._protection: CsrfProtection = protection or DoubleSubmitCsrfProtection()
        self._patterns = [compile_pattern(p) for p in self.config.except_paths]

    async def handle(self, ctx: RequestContext, next: Handler) -> ResponseBuilder:
        if not self.config.enabled:
            return await next(ctx)

        if not self._protection.requires_protection(ctx.method.value):
            return await next(ctx)

        if self.is_excepted(ctx.path):
            return await next(ctx)

        if not await self._protection.verify_request(ctx):
            logger.info("csrf_rejected", method=ctx.method.value, path=ctx.path)
            return ResponseBuilder.error(
                "CSRF token mismatch",
                CSRF_STATUS_CODE,
                {
                    "error": CSRF_ERROR_CODE,
                    "message": "The CSRF token is invalid or missing. "
                    "Please refresh the page and try again.",
                },
            )

        return await next(ctx)

    def is_excepted(self, path: str) -> bool:
        return any(p.fullmatch(path) for p in self._patterns)

    @classmethod
    def for_api(
        cls,
        additional_except: Iterable[str] = (),
        *,
        protection: CsrfProtection | None = None,
    ) -> CsrfPolicy:
        default_except = (
            "/api/auth/login",
            "/api/auth/register",
            "/api/health",
            "/api/status",
        )
        return cls(protection, except_paths=(*default_except, *additional_except))

    @classmethod
    def for_web(
        cls,
        except_paths: Iterable[str] = (),
        *,
        protection: CsrfProtection | None = None,
    ) -> CsrfPolicy:
        return cls(protection, except_paths=tuple(except_paths))

    @classmethod
    def disabled(cls) -> CsrfPolicy:
        return cls(enabled=False)
