"""Request / response audit logging policy and access-log sinks."""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from fastapi_policy_pipeline._types import Handler
from fastapi_policy_pipeline.config import LoggingConfig, build_config
from fastapi_policy_pipeline.context import RequestContext
from fastapi_policy_pipeline.middleware import Middleware
from fastapi_policy_pipeline.response import ResponseBuilder
from fastapi_policy_pipeline.timing import peak_memory_mb

REDACTED = "[REDACTED]"
REQUEST_ID = "request_id"


@runtime_checkable
class AccessLogSink(Protocol):
    """Append-only destination for access-log records."""

    def write(self, record: dict[str, Any]) -> None: ...


class StructlogSink:
    """Emits access-log records through a structlog logger."""

    def __init__(self, logger: Any | None = None) -> None:
        self._logger = logger or structlog.get_logger("fastapi_policy_pipeline.access")

    def write(self, record: dict[str, Any]) -> None:
        fields = dict(record)
        event = fields.pop("type", "http")
        self._logger.info(f"http_{event}", **fields)


class JsonLinesSink:
    """Appends newline-delimited JSON records to a file.

    structlog's WriteLogger holds a per-file lock around each write, so lines
    from concurrent requests never interleave.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("a", encoding="utf-8")
        self._logger = structlog.wrap_logger(
            structlog.WriteLogger(self._file),
            processors=[
                structlog.processors.EventRenamer("type"),
                structlog.processors.JSONRenderer(ensure_ascii=False),
            ],
            wrapper_class=structlog.BoundLogger,
        )

    def write(self, record: dict[str, Any]) -> None:
        fields = dict(record)
        event = fields.pop("type", "http")
        self._logger.info(event, **fields)

    def close(self) -> None:
        self._file.close()


def is_sensitive(name: str, sensitive_fields: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(field.lower() in lowered for field in sensitive_fields)


def redact(data: Any, sensitive_fields: Iterable[str]) -> Any:
    """Recursively replace values of sensitive keys with ``[REDACTED]``.

    Strings holding a JSON object or array are decoded, redacted and
    re-encoded.
    """
    fields = tuple(sensitive_fields)
    if isinstance(data, Mapping):
        return {
            key: REDACTED
            if isinstance(key, str) and is_sensitive(key, fields)
            else redact(value, fields)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(item, fields) for item in data]
    if isinstance(data, str):
        try:
            decoded = json.loads(data)
        except ValueError:
            return data
        if isinstance(decoded, (dict, list)):
            return json.dumps(redact(decoded, fields), ensure_ascii=False)
    return data


def _new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class LoggingPolicy(Middleware):
    """Writes one correlated request record and one response record per request.

    Runs late so it times the handler itself; give it a lower priority to
    time more of the chain.
    """

    priority = 90

    def __init__(
        self,
        sink: AccessLogSink | None = None,
        config: LoggingConfig | Mapping[str, Any] | None = None,
        **options: Any,
    ) -> None:
        self.config = build_config(LoggingConfig, config, options)
        if self.config.priority is not None:
            self.priority = self.config.priority
        self._sink: AccessLogSink = sink or StructlogSink()

    @property
    def sink(self) -> AccessLogSink:
        return self._sink

    async def aclose(self) -> None:
        close = getattr(self._sink, "close", None)
        if close is not None:
            close()

    async def handle(self, ctx: RequestContext, next: Handler) -> ResponseBuilder:
        request_id = _new_request_id()
        ctx.params[REQUEST_ID] = request_id
        start = time.perf_counter()

        if self.config.log_requests:
            self._sink.write(self._request_record(ctx, request_id))

        try:
            response = await next(ctx)
        except Exception as exc:
            if self.config.log_responses:
                record = self._base_response_record(request_id, 500, start)
                record["error"] = type(exc).__name__
                self._sink.write(record)
            raise

        if self.config.request_id_header:
            response.header(self.config.request_id_header, request_id)

        if self.config.log_responses:
            self._sink.write(self._response_record(response, request_id, start))

        return response

    def _request_record(self, ctx: RequestContext, request_id: str) -> dict[str, Any]:
        record: dict[str, Any] = {
            "type": "request",
            "request_id": request_id,
            "timestamp": _timestamp(),
            "method": ctx.method.value,
            "uri": ctx.uri,
            "ip": ctx.client_ip,
            "user_agent": ctx.user_agent,
        }
        if self.config.log_headers:
            record["headers"] = self._sanitize(dict(ctx.headers))
        if self.config.log_body:
            record["body"] = self._body(ctx.body)
        return record

    def _base_response_record(
        self, request_id: str, status_code: int, start: float
    ) -> dict[str, Any]:
        return {
            "type": "response",
            "request_id": request_id,
            "timestamp": _timestamp(),
            "status_code": status_code,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            "memory_mb": peak_memory_mb(),
        }

    def _response_record(
        self, response: ResponseBuilder, request_id: str, start: float
    ) -> dict[str, Any]:
        record = self._base_response_record(request_id, response.status_code, start)
        if self.config.log_headers:
            record["headers"] = self._sanitize(response.headers)
        if self.config.log_body:
            record["body"] = self._body(response.body)
        return record

    def _body(self, body: bytes) -> str:
        text = self._sanitize(body.decode("utf-8", errors="replace"))
        limit = self.config.max_body_length
        if len(text) > limit:
            text = text[:limit] + "... (truncated)"
        return text

    def _sanitize(self, data: Any) -> Any:
        if not self.config.sanitize_sensitive:
            return data
        return redact(data, self.config.sensitive_fields)
