"""PipelineTiming — execution record returned by Pipeline.execute_with_timing."""

from __future__ import annotations

import sys
from dataclasses import dataclass

from fastapi_policy_pipeline.response import ResponseBuilder

try:
    import resource
except ImportError:  # pragma: no cover - not available on Windows
    resource = None  # type: ignore[assignment]


@dataclass(frozen=True)
class PipelineTiming:
    """Single pipeline execution record."""

    response: ResponseBuilder
    execution_time: float
    memory_used: float
    middleware_count: int


def peak_memory_mb() -> float:
    """Peak resident set size of the process in megabytes (0.0 if unknown)."""
    if resource is None:
        return 0.0
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return round(peak / divisor, 2)
