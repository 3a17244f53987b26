"""Built-in request policies."""

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
    redact,
)

__all__ = [
    "AccessLogSink",
    "AuthPolicy",
    "AuthResult",
    "AuthVerifier",
    "CallbackVerifier",
    "CorsPolicy",
    "CsrfPolicy",
    "CsrfProtection",
    "DoubleSubmitCsrfProtection",
    "InMemoryRateLimitStore",
    "JsonLinesSink",
    "LoggingPolicy",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimitRecord",
    "RateLimitStore",
    "RedisRateLimitStore",
    "StructlogSink",
    "redact",
]
