"""Bounded child-process runner for test harnesses."""

from procharness.errors import (
    EscalationError,
    ExecutionTimeoutError,
    HarnessError,
    SpawnError,
    StreamReadError,
)
from procharness.models import CaptureMode, ExecutionOutcome, ExitStatus, Invocation
from procharness.runner import execute, execute_async

__all__ = [
    "CaptureMode",
    "EscalationError",
    "ExecutionOutcome",
    "ExecutionTimeoutError",
    "ExitStatus",
    "HarnessError",
    "Invocation",
    "SpawnError",
    "StreamReadError",
    "execute",
    "execute_async",
]
