"""FastAPI Policy Pipeline - ordered cross-cutting request policies for ASGI apps."""

from fastapi_policy_pipeline.asgi import PipelineMiddleware, install_pipeline
from fastapi_policy_pipeline.config import (
    AuthConfig,
    CorsConfig,
    CsrfConfig,
    LoggingConfig,
    PipelineSettings,
    RateLimitConfig,
)
from fastapi_policy_pipeline.context import HttpMethod, RequestContext, RouteParams
from fastapi_policy_pipeline.dependency import current_identity, request_context
from fastapi_policy_pipeline.exceptions import (
    AuthenticationFailed,
    ConfigurationError,
    PipelineException,
)
from fastapi_policy_pipeline.middleware import Middleware
from fastapi_policy_pipeline.pipeline import (
    ConditionalPipeline,
    Pipeline,
    PipelineEntry,
    ResolvedPipeline,
    Scope,
)
from fastapi_policy_pipeline.policies.auth import (
    AuthPolicy,
    AuthResult,
    AuthVerifier,
    CallbackVerifier,
)
from fastapi_policy_pipeline.policies.cors import CorsPolicy
from fastapi_policy_pipeline.policies.csrf import (
    CsrfPolicy,
    CsrfProtection,
    DoubleSubmitCsrfProtection,
)
from fastapi_policy_pipeline.policies.rate_limit import (
    InMemoryRateLimitStore,
    RateLimitDecision,
    RateLimitPolicy,
    RateLimitRecord,
    RateLimitStore,
    RedisRateLimitStore,
)
from fastapi_policy_pipeline.policies.request_logging import (
    AccessLogSink,
    JsonLinesSink,
    LoggingPolicy,
    StructlogSink,
)
from fastapi_policy_pipeline.registry import (
    PolicyRegistry,
    Services,
    build_pipeline,
    default_registry,
)
from fastapi_policy_pipeline.response import ResponseBuilder
from fastapi_policy_pipeline.timing import PipelineTiming

__all__ = [
    "AccessLogSink",
    "AuthConfig",
    "AuthPolicy",
    "AuthResult",
    "AuthVerifier",
    "AuthenticationFailed",
    "CallbackVerifier",
    "ConditionalPipeline",
    "ConfigurationError",
    "CorsConfig",
    "CorsPolicy",
    "CsrfConfig",
    "CsrfPolicy",
    "CsrfProtection",
    "DoubleSubmitCsrfProtection",
    "HttpMethod",
    "InMemoryRateLimitStore",
    "JsonLinesSink",
    "LoggingConfig",
    "LoggingPolicy",
    "Middleware",
    "Pipeline",
    "PipelineEntry",
    "PipelineException",
    "PipelineMiddleware",
    "PipelineSettings",
    "PipelineTiming",
    "PolicyRegistry",
    "RateLimitConfig",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimitRecord",
    "RateLimitStore",
    "RedisRateLimitStore",
    "RequestContext",
    "ResolvedPipeline",
    "ResponseBuilder",
    "RouteParams",
    "Scope",
    "Services",
    "StructlogSink",
    "build_pipeline",
    "current_identity",
    "default_registry",
    "install_pipeline",
    "request_context",
]
