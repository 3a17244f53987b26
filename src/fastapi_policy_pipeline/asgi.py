"""PipelineMiddleware — runs a Pipeline in front of any ASGI application."""

from __future__ import annotations

from typing import Any

import structlog
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from fastapi_policy_pipeline.context import HttpMethod, RequestContext
from fastapi_policy_pipeline.pipeline import ConditionalPipeline, Pipeline
from fastapi_policy_pipeline.response import ResponseBuilder

logger = structlog.get_logger(__name__)

CONTEXT_STATE_KEY = "pipeline_context"


class PipelineMiddleware:
    """ASGI middleware whose terminal handler is the wrapped application.

    The downstream response is buffered into a ResponseBuilder so policies
    can decorate it on the way out; it is flushed to the server exactly once.
    The RequestContext is published on ``request.state.pipeline_context``.
    """

    def __init__(self, app: ASGIApp, pipeline: Pipeline | ConditionalPipeline) -> None:
        self.app = app
        self.pipeline = pipeline

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        try:
            HttpMethod(request.method.upper())
        except ValueError:
            response = ResponseBuilder.error("Method not implemented", 501)
            await response.send(scope, receive, send)
            return

        ctx = await RequestContext.from_request(request)
        scope.setdefault("state", {})[CONTEXT_STATE_KEY] = ctx

        async def terminal(ctx: RequestContext) -> ResponseBuilder:
            return await self._call_app(ctx, scope, receive)

        response = await self.pipeline.execute(ctx, terminal)
        await response.send(scope, receive, send)

    async def _call_app(
        self, ctx: RequestContext, scope: Scope, receive: Receive
    ) -> ResponseBuilder:
        body_replayed = False

        async def replay() -> Message:
            nonlocal body_replayed
            if not body_replayed:
                body_replayed = True
                return {"type": "http.request", "body": ctx.body, "more_body": False}
            return await receive()

        builder = ResponseBuilder()
        chunks: list[bytes] = []

        async def capture(message: Message) -> None:
            if message["type"] == "http.response.start":
                builder.status_code = message["status"]
                for name, value in message.get("headers", []):
                    key, text = name.decode("latin-1"), value.decode("latin-1")
                    # repeated list-valued headers are combined, set-cookie accumulates
                    previous = builder.get_header(key)
                    if previous is not None and key.lower() != "set-cookie":
                        text = f"{previous}, {text}"
                    builder.header(key, text)
            elif message["type"] == "http.response.body":
                chunks.append(message.get("body", b""))

        await self.app(scope, replay, capture)
        builder.body = b"".join(chunks)
        return builder


def install_pipeline(app: Any, pipeline: Pipeline | ConditionalPipeline) -> None:
    """Register ``pipeline`` on a Starlette / FastAPI application.

    The pipeline's policies are closed when the application shuts down.
    """
    app.add_middleware(PipelineMiddleware, pipeline=pipeline)
    app.add_event_handler("shutdown", pipeline.aclose)
    logger.info("pipeline_installed", app=type(app).__name__)
