"""PipelineException hierarchy for wiring-time and collaborator failures."""

from __future__ import annotations


class PipelineException(Exception):
    """Base for all pipeline exceptions."""


class ConfigurationError(PipelineException):
    """Malformed middleware registration or invalid policy configuration.

    Raised while the pipeline is being wired, never per request.
    """


class AuthenticationFailed(PipelineException):
    """Raised by an AuthVerifier to signal an invalid or expired token."""

    def __init__(self, detail: str = "Authentication failed") -> None:
        super().__init__(detail)
        self.detail = detail
