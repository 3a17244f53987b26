"""Authentication policy — bearer token extraction, role and permission checks."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog

from fastapi_policy_pipeline._types import DecodeCallback, Handler
from fastapi_policy_pipeline.config import AuthConfig, build_config
from fastapi_policy_pipeline.context import AUTHENTICATED_USER, RequestContext
from fastapi_policy_pipeline.middleware import Middleware
from fastapi_policy_pipeline.response import ResponseBuilder

logger = structlog.get_logger(__name__)


@runtime_checkable
class AuthVerifier(Protocol):
    """Decodes a token into claims. Returns None or raises on failure."""

    async def verify(self, token: str) -> Any: ...


class CallbackVerifier:
    """Adapts an async decode callback to the AuthVerifier protocol."""

    def __init__(self, decode: DecodeCallback) -> None:
        self._decode = decode

    async def verify(self, token: str) -> Any:
        return await self._decode(token)


def _get_claim(claims: object, name: str) -> Any:
    """Extract a claim by dict key or attribute."""
    if isinstance(claims, Mapping):
        return claims.get(name)
    return getattr(claims, name, None)


def _as_set(value: Any) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset({value})
    if isinstance(value, Iterable):
        return frozenset(str(v) for v in value)
    return frozenset()


@dataclass(frozen=True)
class AuthResult:
    """Authenticated identity, valid for the lifetime of one request."""

    subject: str | None
    roles: frozenset[str] = frozenset()
    permissions: frozenset[str] = frozenset()
    claims: Any = field(default=None, compare=False)

    @classmethod
    def from_claims(cls, claims: Any, subject_claim: str = "user_id") -> AuthResult:
        subject = None
        for name in (subject_claim, "sub", "id"):
            value = _get_claim(claims, name)
            if value is not None:
                subject = str(value)
                break
        return cls(
            subject=subject,
            roles=_as_set(_get_claim(claims, "roles")),
            permissions=_as_set(_get_claim(claims, "permissions")),
            claims=claims,
        )

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return any(role in self.roles for role in roles)

    def has_all_permissions(self, permissions: Iterable[str]) -> bool:
        return all(permission in self.permissions for permission in permissions)


def extract_token(ctx: RequestContext, header: str, prefix: str) -> str | None:
    """Read a token from ``header``, stripping ``prefix`` when present."""
    value = ctx.header(header)
    if not value:
        return None
    if prefix and value.startswith(prefix):
        value = value[len(prefix):]
    return value.strip() or None


class AuthPolicy(Middleware):
    """Verifies the request token and enforces role / permission requirements.

    Roles are satisfied by ANY configured role, permissions only by ALL
    configured permissions. Verifier errors are reported as 401, never 500.
    """

    priority = 30

    def __init__(
        self,
        verifier: AuthVerifier,
        config: AuthConfig | Mapping[str, Any] | None = None,
        **options: Any,
    ) -> None:
        self._verifier = verifier
        self.config = build_config(AuthConfig, config, options)
        if self.config.priority is not None:
            self.priority = self.config.priority

    async def handle(self, ctx: RequestContext, next: Handler) -> ResponseBuilder:
        token = extract_token(ctx, self.config.token_header, self.config.token_prefix)
        if token is None:
            if self.config.optional:
                return await next(ctx)
            return ResponseBuilder.unauthorized("Authentication token required")

        try:
            claims = await self._verify(token)
        except Exception as exc:
            logger.info("auth_verification_failed", error=type(exc).__name__)
            return ResponseBuilder.unauthorized("Authentication failed")

        if not claims:
            return ResponseBuilder.unauthorized("Invalid authentication token")

        identity = AuthResult.from_claims(claims)

        if self.config.roles and not identity.has_any_role(self.config.roles):
            return ResponseBuilder.forbidden("Insufficient role privileges")

        if self.config.permissions and not identity.has_all_permissions(
            self.config.permissions
        ):
            return ResponseBuilder.forbidden("Insufficient permissions")

        ctx.params[AUTHENTICATED_USER] = identity
        return await next(ctx)

    async def _verify(self, token: str) -> Any:
        if self.config.verify_timeout is None:
            return await self._verifier.verify(token)
        return await asyncio.wait_for(
            self._verifier.verify(token), timeout=self.config.verify_timeout
        )

    @classmethod
    def require_roles(cls, verifier: AuthVerifier, *roles: str) -> AuthPolicy:
        return cls(verifier, roles=roles)

    @classmethod
    def require_permissions(
        cls, verifier: AuthVerifier, *permissions: str
    ) -> AuthPolicy:
        return cls(verifier, permissions=permissions)

    @classmethod
    def optional_auth(cls, verifier: AuthVerifier) -> AuthPolicy:
        return cls(verifier, optional=True)
