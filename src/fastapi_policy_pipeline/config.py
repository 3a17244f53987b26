"""Typed policy configuration, validated when a policy is constructed."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fastapi_policy_pipeline.exceptions import ConfigurationError

ConfigT = TypeVar("ConfigT", bound="PolicyConfig")


class PolicyConfig(BaseModel):
    """Base for per-policy configuration. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    priority: int | None = None


class CorsConfig(PolicyConfig):
    allowed_origins: tuple[str, ...] = ("*",)
    allowed_methods: tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "OPTIONS")
    allowed_headers: tuple[str, ...] = ("Content-Type", "Authorization", "X-Requested-With")
    exposed_headers: tuple[str, ...] = ()
    max_age: int = Field(default=86400, ge=0)
    allow_credentials: bool = True

    @field_validator("allowed_methods")
    @classmethod
    def _upper_methods(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(m.upper() for m in value)

    @property
    def wildcard_with_credentials(self) -> bool:
        return "*" in self.allowed_origins and self.allow_credentials


class RateLimitConfig(PolicyConfig):
    max_attempts: PositiveInt = 60
    window_seconds: PositiveInt = 60
    key_prefix: str = Field(default="api", min_length=1)
    user_based: bool = False
    authenticated_limit: PositiveInt | None = None
    anonymous_limit: PositiveInt | None = None
    role_limits: dict[str, PositiveInt] = Field(default_factory=dict)
    user_id_claim: str = "user_id"
    token_header: str = Field(default="Authorization", min_length=1)
    token_prefix: str = "Bearer "
    fail_open: bool = False
    store_timeout: float | None = Field(default=None, gt=0)

    @property
    def resolved_authenticated_limit(self) -> int:
        if self.authenticated_limit is not None:
            return self.authenticated_limit
        return self.max_attempts * 2

    @property
    def resolved_anonymous_limit(self) -> int:
        if self.anonymous_limit is not None:
            return self.anonymous_limit
        return self.max_attempts


class AuthConfig(PolicyConfig):
    token_header: str = Field(default="Authorization", min_length=1)
    token_prefix: str = "Bearer "
    optional: bool = False
    roles: tuple[str, ...] = ()
    permissions: tuple[str, ...] = ()
    verify_timeout: float | None = Field(default=None, gt=0)


class CsrfConfig(PolicyConfig):
    except_paths: tuple[str, ...] = Field(default=(), alias="except")
    enabled: bool = True


class LoggingConfig(PolicyConfig):
    log_requests: bool = True
    log_responses: bool = True
    log_headers: bool = False
    log_body: bool = False
    sanitize_sensitive: bool = True
    sensitive_fields: tuple[str, ...] = (
        "password",
        "token",
        "secret",
        "key",
        "authorization",
        "cookie",
    )
    max_body_length: PositiveInt = 1000
    request_id_header: str | None = "X-Request-ID"


def build_config(
    model: type[ConfigT],
    config: ConfigT | Mapping[str, Any] | None,
    options: Mapping[str, Any],
) -> ConfigT:
    """Merge ``options`` over ``config`` and validate the result as ``model``.

    Any validation failure surfaces as a ConfigurationError.
    """
    if isinstance(config, model):
        data: dict[str, Any] = config.model_dump(exclude_unset=True)
    elif config is None:
        data = {}
    elif isinstance(config, Mapping):
        data = dict(config)
    else:
        raise ConfigurationError(
            f"{model.__name__} expected a mapping or {model.__name__}, got {config!r}"
        )
    data.update(options)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid {model.__name__}: {exc}") from exc


class PipelineSettings(BaseSettings):
    """Environment-driven pipeline settings.

    ``POLICY_PIPELINE_RATE_LIMIT__MAX_ATTEMPTS=30`` sets a nested value.
    """

    model_config = SettingsConfigDict(
        env_prefix="POLICY_PIPELINE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    policies: list[str] = Field(
        default_factory=lambda: ["cors", "rate_limit", "auth", "csrf", "logging"]
    )
    cors: CorsConfig = Field(default_factory=CorsConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    csrf: CsrfConfig = Field(default_factory=CsrfConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    access_log_path: str | None = None
    redis_url: str | None = None

    @classmethod
    def load(cls, **values: Any) -> PipelineSettings:
        """Read settings from the environment, overridden by ``values``.

        Invalid values surface as a ConfigurationError.
        """
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid PipelineSettings: {exc}") from exc
