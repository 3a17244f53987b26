"""FastAPI dependencies exposing the pipeline's RequestContext to route handlers."""

from __future__ import annotations

from fastapi import HTTPException
from starlette.requests import Request

from fastapi_policy_pipeline.asgi import CONTEXT_STATE_KEY
from fastapi_policy_pipeline.context import RequestContext
from fastapi_policy_pipeline.policies.auth import AuthResult


def request_context(request: Request) -> RequestContext:
    """Return the RequestContext decorated by the pipeline for this request."""
    ctx = getattr(request.state, CONTEXT_STATE_KEY, None)
    if ctx is None:
        raise HTTPException(
            status_code=500, detail="PipelineMiddleware is not installed"
        )
    result: RequestContext = ctx
    return result


def current_identity(request: Request) -> AuthResult | None:
    """Return the authenticated identity, or None for anonymous requests."""
    return request_context(request).identity
