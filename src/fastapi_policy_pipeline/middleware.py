"""Middleware abstract base class — the contract every policy implements."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import final

import structlog

from fastapi_policy_pipeline._types import Handler
from fastapi_policy_pipeline.context import RequestContext
from fastapi_policy_pipeline.response import ResponseBuilder

logger = structlog.get_logger(__name__)

DEFAULT_PRIORITY = 100


class Middleware(ABC):
    """Base abstraction for every request policy in a pipeline.

    Lower ``priority`` values run their ``before`` phase earlier and their
    ``after`` phase later. Subclasses implement ``handle``; callers always go
    through ``execute``, which contains every exception raised by the policy
    or by the rest of the chain it wraps.
    """

    priority: int = DEFAULT_PRIORITY

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def handle(self, ctx: RequestContext, next: Handler) -> ResponseBuilder:
        ...

    def should_execute(self, ctx: RequestContext) -> bool:
        return True

    async def before(self, ctx: RequestContext) -> None:
        pass

    async def after(
        self, ctx: RequestContext, response: ResponseBuilder
    ) -> ResponseBuilder:
        return response

    async def on_error(
        self, exc: Exception, ctx: RequestContext
    ) -> ResponseBuilder:
        return ResponseBuilder.error("Internal server error", 500)

    async def aclose(self) -> None:
        """Release resources held by the policy. Called once at shutdown."""

    @final
    async def execute(self, ctx: RequestContext, next: Handler) -> ResponseBuilder:
        try:
            if not self.should_execute(ctx):
                return await next(ctx)

            await self.before(ctx)
            response = await self.handle(ctx, next)
            return await self.after(ctx, response)
        except Exception as exc:
            logger.exception(
                "middleware_error",
                middleware=self.name,
                method=ctx.method.value,
                path=ctx.path,
                error=type(exc).__name__,
            )
            return await self._contain(exc, ctx)

    async def _contain(self, exc: Exception, ctx: RequestContext) -> ResponseBuilder:
        try:
            return await self.on_error(exc, ctx)
        except Exception:
            logger.exception("middleware_error_handler_failed", middleware=self.name)
            return ResponseBuilder.error("Internal server error", 500)

    def __repr__(self) -> str:
        return f"{self.name}(priority={self.priority})"
