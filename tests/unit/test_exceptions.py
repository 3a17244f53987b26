"""Tests for PipelineException hierarchy."""

from __future__ import annotations

from fastapi_policy_pipeline.exceptions import (
    AuthenticationFailed,
    ConfigurationError,
    PipelineException,
)


class TestPipelineException:
    def test_is_base_exception(self) -> None:
        exc = PipelineException("test")
        assert isinstance(exc, Exception)
        assert str(exc) == "test"


class TestConfigurationError:
    def test_is_pipeline_exception(self) -> None:
        assert issubclass(ConfigurationError, PipelineException)


class TestAuthenticationFailed:
    def test_default_detail(self) -> None:
        exc = AuthenticationFailed()
        assert exc.detail == "Authentication failed"
        assert str(exc) == "Authentication failed"

    def test_custom_detail(self) -> None:
        exc = AuthenticationFailed("token expired")
        assert exc.detail == "token expired"

    def test_is_pipeline_exception(self) -> None:
        assert issubclass(AuthenticationFailed, PipelineException)
