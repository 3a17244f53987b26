"""Shared type aliases and protocols."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fastapi_policy_pipeline.context import RequestContext
    from fastapi_policy_pipeline.response import ResponseBuilder

# A link of the chain: the terminal handler or the remainder of the pipeline
Handler = Callable[["RequestContext"], Awaitable["ResponseBuilder"]]
Predicate = Callable[["RequestContext"], bool]

# Callback types used by collaborator adapters
DecodeCallback = Callable[[str], Awaitable[Any]]
Clock = Callable[[], float]
