"""Shared fixtures for the procharness test suite."""

from __future__ import annotations

from datetime import datetime
import sys
import textwrap
from typing import Any

from procharness.models import ExecutionOutcome, ExitStatus, Invocation
import pytest

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_invocation(**overrides: Any) -> Invocation:
    """Build a valid Invocation of the running interpreter.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed Invocation instance.
    """
    defaults: dict[str, Any] = {
        "executable": sys.executable,
        "args": ("-c", "pass"),
        "timeout_seconds": 10.0,
        "grace_seconds": 1.0,
    }
    defaults.update(overrides)
    return Invocation(**defaults)


def python_child(code: str, **overrides: Any) -> Invocation:
    """Build an Invocation that runs *code* with ``python -c``.

    Args:
        code: Python source; dedented before use.
        **overrides: Field values to override.

    Returns:
        A fully constructed Invocation instance.
    """
    return make_invocation(args=("-c", textwrap.dedent(code)), **overrides)


def make_status(**overrides: Any) -> ExitStatus:
    """Build a valid ExitStatus (normal exit 0 by default).

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed ExitStatus instance.
    """
    defaults: dict[str, Any] = {"pid": 4242}
    defaults.update(overrides)
    if "signal" not in defaults:
        defaults.setdefault("exit_code", 0)
    return ExitStatus(**defaults)


def make_outcome(**overrides: Any) -> ExecutionOutcome:
    """Build a valid ExecutionOutcome with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed ExecutionOutcome instance.
    """
    defaults: dict[str, Any] = {
        "stdout": b"",
        "stderr": b"",
        "status": make_status(),
        "started_at": datetime(2026, 1, 1, 12, 0, 0),
        "duration_seconds": 0.1,
    }
    defaults.update(overrides)
    return ExecutionOutcome(**defaults)


class RecordingLocator:
    """Crash-report locator that records its calls and returns a fixed report."""

    def __init__(self, report: str | None = None) -> None:
        self.report = report
        self.calls: list[tuple[str | None, str, int, datetime]] = []

    def __call__(
        self,
        signal_name: str | None,
        executable: str,
        pid: int,
        since: datetime,
    ) -> str | None:
        self.calls.append((signal_name, executable, pid, since))
        return self.report


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def locator() -> RecordingLocator:
    """Locator that never finds a report but records lookups."""
    return RecordingLocator()


@pytest.fixture(autouse=True)
def _no_interpreter_override(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's PROCHARNESS_INTERPRETER from leaking into tests."""
    monkeypatch.delenv("PROCHARNESS_INTERPRETER", raising=False)
