"""Pipeline — ordered container and execution engine for Middleware policies."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum

import structlog

from fastapi_policy_pipeline._types import Handler, Predicate
from fastapi_policy_pipeline.context import RequestContext
from fastapi_policy_pipeline.exceptions import ConfigurationError
from fastapi_policy_pipeline.middleware import Middleware
from fastapi_policy_pipeline.response import ResponseBuilder
from fastapi_policy_pipeline.timing import PipelineTiming, peak_memory_mb

logger = structlog.get_logger(__name__)


class Scope(Enum):
    """Registration scope. Global policies always run before local ones."""

    GLOBAL = "global"
    LOCAL = "local"


@dataclass(frozen=True)
class PipelineEntry:
    policy: Middleware
    scope: Scope = Scope.LOCAL


@dataclass(frozen=True)
class ResolvedPipeline:
    """Immutable, pre-computed execution plan."""

    policies: tuple[Middleware, ...]

    def compose(self, terminal: Handler) -> Handler:
        """Right-fold the policies around ``terminal`` (onion order)."""
        handler = terminal
        for policy in reversed(self.policies):
            handler = _link(policy, handler)
        return handler


def _link(policy: Middleware, next: Handler) -> Handler:
    async def run(ctx: RequestContext) -> ResponseBuilder:
        return await policy.execute(ctx, next)

    run.__qualname__ = f"{policy.name}.execute"
    return run


class Pipeline:
    """Ordered container of Middleware instances."""

    def __init__(self, *policies: Middleware) -> None:
        self._entries: list[PipelineEntry] = []
        self._resolved: ResolvedPipeline | None = None
        for policy in policies:
            self.add(policy)

    def add(self, policy: Middleware, scope: Scope = Scope.LOCAL) -> Pipeline:
        if not isinstance(policy, Middleware):
            raise ConfigurationError(
                f"{policy!r} is not a Middleware instance; register constructed "
                "policies or build them through a PolicyRegistry"
            )
        if not isinstance(scope, Scope):
            raise ConfigurationError(f"Unknown pipeline scope: {scope!r}")
        if not isinstance(policy.priority, int) or isinstance(policy.priority, bool):
            raise ConfigurationError(
                f"{policy.name}.priority must be an int, got {policy.priority!r}"
            )
        self._entries.append(PipelineEntry(policy=policy, scope=scope))
        self._resolved = None
        logger.debug(
            "policy_registered",
            policy=policy.name,
            priority=policy.priority,
            scope=scope.value,
        )
        return self

    def add_many(
        self, policies: list[Middleware], scope: Scope = Scope.LOCAL
    ) -> Pipeline:
        for policy in policies:
            self.add(policy, scope)
        return self

    def add_global(self, policy: Middleware) -> Pipeline:
        return self.add(policy, Scope.GLOBAL)

    def remove(self, policy_type: type[Middleware]) -> Pipeline:
        self._entries = [
            e for e in self._entries if not isinstance(e.policy, policy_type)
        ]
        self._resolved = None
        return self

    def clear(self, include_global: bool = False) -> Pipeline:
        if include_global:
            self._entries = []
        else:
            self._entries = [e for e in self._entries if e.scope is Scope.GLOBAL]
        self._resolved = None
        return self

    def has(self, policy_type: type[Middleware]) -> bool:
        return any(isinstance(e.policy, policy_type) for e in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> tuple[PipelineEntry, ...]:
        return tuple(self._entries)

    def resolve(self) -> ResolvedPipeline:
        resolved = self._resolved
        if resolved is not None:
            return resolved

        # sorted() is stable, so equal priorities keep registration order
        global_policies = sorted(
            (e.policy for e in self._entries if e.scope is Scope.GLOBAL),
            key=lambda p: p.priority,
        )
        local_policies = sorted(
            (e.policy for e in self._entries if e.scope is Scope.LOCAL),
            key=lambda p: p.priority,
        )
        resolved = ResolvedPipeline(policies=tuple(global_policies + local_policies))
        self._resolved = resolved
        return resolved

    def policies(self) -> tuple[Middleware, ...]:
        return self.resolve().policies

    def execution_order(self) -> list[str]:
        return [p.name for p in self.policies()]

    async def execute(self, ctx: RequestContext, terminal: Handler) -> ResponseBuilder:
        chain = self.resolve().compose(terminal)
        return await chain(ctx)

    async def execute_with_timing(
        self, ctx: RequestContext, terminal: Handler
    ) -> PipelineTiming:
        resolved = self.resolve()
        start = time.perf_counter()
        start_memory = peak_memory_mb()

        response = await resolved.compose(terminal)(ctx)

        return PipelineTiming(
            response=response,
            execution_time=time.perf_counter() - start,
            memory_used=peak_memory_mb() - start_memory,
            middleware_count=len(resolved.policies),
        )

    async def aclose(self) -> None:
        """Close every registered policy; a failure does not stop the others."""
        for policy in self.policies():
            try:
                await policy.aclose()
            except Exception:
                logger.exception("policy_close_failed", policy=policy.name)

    def when(self, predicate: Predicate) -> ConditionalPipeline:
        return ConditionalPipeline(self, predicate)

    def clone(self) -> Pipeline:
        copy = Pipeline()
        copy._entries = list(self._entries)
        copy._resolved = self._resolved
        return copy


class ConditionalPipeline:
    """Pipeline entered only when ``predicate(ctx)`` holds.

    Wraps a clone of the source pipeline, so policies added here never leak
    back into it.
    """

    def __init__(self, pipeline: Pipeline, predicate: Predicate) -> None:
        self._pipeline = pipeline.clone()
        self._predicate = predicate

    @property
    def pipeline(self) -> Pipeline:
        return self._pipeline

    def add(self, policy: Middleware, scope: Scope = Scope.LOCAL) -> ConditionalPipeline:
        self._pipeline.add(policy, scope)
        return self

    async def execute(self, ctx: RequestContext, terminal: Handler) -> ResponseBuilder:
        if self._predicate(ctx):
            return await self._pipeline.execute(ctx, terminal)
        return await terminal(ctx)

    async def aclose(self) -> None:
        await self._pipeline.aclose()
