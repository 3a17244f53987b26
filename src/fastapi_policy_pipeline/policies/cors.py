"""CORS negotiation policy."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from fastapi_policy_pipeline._types import Handler
from fastapi_policy_pipeline.config import CorsConfig, build_config
from fastapi_policy_pipeline.context import HttpMethod, RequestContext
from fastapi_policy_pipeline.middleware import Middleware
from fastapi_policy_pipeline.response import ResponseBuilder

logger = structlog.get_logger(__name__)


class CorsPolicy(Middleware):
    """Answers preflight requests and decorates real responses with CORS headers.

    Preflight (OPTIONS) requests are answered directly and never reach the
    rest of the chain.
    """

    priority = 10

    def __init__(
        self, config: CorsConfig | Mapping[str, Any] | None = None, **options: Any
    ) -> None:
        self.config = build_config(CorsConfig, config, options)
        if self.config.priority is not None:
            self.priority = self.config.priority
        if self.config.wildcard_with_credentials:
            # Browsers reject credentialed responses for "*"; left as configured.
            logger.warning(
                "cors_wildcard_with_credentials",
                allowed_origins=list(self.config.allowed_origins),
            )

    async def handle(self, ctx: RequestContext, next: Handler) -> ResponseBuilder:
        if ctx.method is HttpMethod.OPTIONS:
            return self._preflight(ctx)
        return await next(ctx)

    async def after(
        self, ctx: RequestContext, response: ResponseBuilder
    ) -> ResponseBuilder:
        if ctx.method is HttpMethod.OPTIONS:
            return response

        self._allow_origin(ctx, response)
        if self.config.exposed_headers:
            response.header(
                "Access-Control-Expose-Headers",
                ", ".join(self.config.exposed_headers),
            )
        if self.config.allow_credentials:
            response.header("Access-Control-Allow-Credentials", "true")
        return response

    def is_origin_allowed(self, origin: str | None) -> bool:
        if not origin:
            return False
        if "*" in self.config.allowed_origins:
            return True
        return origin in self.config.allowed_origins

    def _preflight(self, ctx: RequestContext) -> ResponseBuilder:
        response = ResponseBuilder.make("", 200)
        self._allow_origin(ctx, response)
        response.header(
            "Access-Control-Allow-Methods", ", ".join(self.config.allowed_methods)
        )
        response.header(
            "Access-Control-Allow-Headers", ", ".join(self.config.allowed_headers)
        )
        response.header("Access-Control-Max-Age", str(self.config.max_age))
        if self.config.allow_credentials:
            response.header("Access-Control-Allow-Credentials", "true")
        return response

    def _allow_origin(self, ctx: RequestContext, response: ResponseBuilder) -> None:
        origin = ctx.header("origin")
        if origin and self.is_origin_allowed(origin):
            response.header("Access-Control-Allow-Origin", origin)
            response.header("Vary", "Origin")
