"""PolicyRegistry — string keys mapped to policy factories."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import structlog

from fastapi_policy_pipeline.config import PipelineSettings
from fastapi_policy_pipeline.exceptions import ConfigurationError
from fastapi_policy_pipeline.middleware import Middleware
from fastapi_policy_pipeline.pipeline import Pipeline
from fastapi_policy_pipeline.policies.auth import AuthPolicy, AuthVerifier
from fastapi_policy_pipeline.policies.cors import CorsPolicy
from fastapi_policy_pipeline.policies.csrf import CsrfPolicy, CsrfProtection
from fastapi_policy_pipeline.policies.rate_limit import (
    RateLimitPolicy,
    RateLimitStore,
    RedisRateLimitStore,
)
from fastapi_policy_pipeline.policies.request_logging import (
    AccessLogSink,
    JsonLinesSink,
    LoggingPolicy,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Services:
    """Collaborators handed to policy factories."""

    verifier: AuthVerifier | None = None
    csrf_protection: CsrfProtection | None = None
    rate_limit_store: RateLimitStore | None = None
    access_log_sink: AccessLogSink | None = None


PolicyFactory = Callable[[PipelineSettings, Services], Middleware]


class PolicyRegistry:
    """Builds policies by name without reflecting on class names."""

    def __init__(self) -> None:
        self._factories: dict[str, PolicyFactory] = {}

    def register(self, name: str, factory: PolicyFactory) -> PolicyRegistry:
        if name in self._factories:
            raise ConfigurationError(f"Policy {name!r} is already registered")
        self._factories[name] = factory
        return self

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def names(self) -> list[str]:
        return list(self._factories)

    def create(
        self, name: str, settings: PipelineSettings, services: Services
    ) -> Middleware:
        factory = self._factories.get(name)
        if factory is None:
            raise ConfigurationError(
                f"Unknown policy {name!r}; registered: {', '.join(self._factories)}"
            )
        policy = factory(settings, services)
        if not isinstance(policy, Middleware):
            raise ConfigurationError(
                f"Factory for {name!r} returned {policy!r}, not a Middleware"
            )
        return policy


def _auth(settings: PipelineSettings, services: Services) -> Middleware:
    if services.verifier is None:
        raise ConfigurationError("The 'auth' policy requires an AuthVerifier")
    return AuthPolicy(services.verifier, settings.auth)


def _rate_limit(settings: PipelineSettings, services: Services) -> Middleware:
    store = services.rate_limit_store
    if store is None and settings.redis_url:
        store = RedisRateLimitStore.from_url(settings.redis_url)
    # identify users by the same header the auth policy reads, unless overridden
    options = {
        name: getattr(settings.auth, name)
        for name in ("token_header", "token_prefix")
        if name not in settings.rate_limit.model_fields_set
    }
    return RateLimitPolicy(
        store, verifier=services.verifier, config=settings.rate_limit, **options
    )


def _logging(settings: PipelineSettings, services: Services) -> Middleware:
    sink = services.access_log_sink
    if sink is None and settings.access_log_path:
        sink = JsonLinesSink(settings.access_log_path)
    return LoggingPolicy(sink, settings.logging)


def default_registry() -> PolicyRegistry:
    registry = PolicyRegistry()
    registry.register("cors", lambda settings, _: CorsPolicy(settings.cors))
    registry.register("rate_limit", _rate_limit)
    registry.register("auth", _auth)
    registry.register(
        "csrf", lambda settings, services: CsrfPolicy(services.csrf_protection, settings.csrf)
    )
    registry.register("logging", _logging)
    return registry


def build_pipeline(
    settings: PipelineSettings | None = None,
    services: Services | None = None,
    *,
    registry: PolicyRegistry | None = None,
) -> Pipeline:
    """Build a pipeline containing every policy named in ``settings.policies``."""
    settings = settings or PipelineSettings.load()
    services = services or Services()
    registry = registry or default_registry()

    pipeline = Pipeline()
    for name in settings.policies:
        pipeline.add_global(registry.create(name, settings, services))
    logger.info("pipeline_built", policies=pipeline.execution_order())
    return pipeline
