"""Exception hierarchy for the process harness.

Every failure that leaves :func:`procharness.runner.execute` is a
``HarnessError`` subclass, except the verbatim re-raise of an OS error from
the final kill wait. Each error carries a ``diagnostics`` dict with
structured context (pid, label, elapsed time) for debugging.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from procharness.models import ExitStatus


class HarnessError(Exception):
    """Base class for harness failures with diagnostic context.

    Attributes:
        diagnostics: Structured information about the failure.
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None) -> None:
        """Initialize with a message and optional structured diagnostics.

        Args:
            message: Human-readable error description.
            diagnostics: Structured context (pid, executable, etc.).
        """
        super().__init__(message)
        self.diagnostics = diagnostics or {}


class SpawnError(HarnessError):
    """The child process could not be created. Never retried."""


class StreamReadError(HarnessError):
    """A collector failed to read its pipe for a reason other than EOF.

    Attributes:
        stream: Name of the stream that failed (``"stdout"`` or ``"stderr"``).
    """

    def __init__(
        self,
        message: str,
        *,
        stream: str,
        diagnostics: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, diagnostics=diagnostics)
        self.stream = stream


class EscalationError(HarnessError):
    """The kill signal was sent but the child did not exit within ``kill_timeout``."""


class ExecutionTimeoutError(HarnessError):
    """The child did not finish before its deadline and had to be terminated.

    Attributes:
        label: Name of the operation that invoked the harness.
        status: Exit status of the terminated (and reaped) child.
        signal_sent: Last signal delivered during escalation.
        stdout: Output captured on stdout before termination.
        stderr: Output captured on stderr before termination.
        crash_report: Recovered crash-report text, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        label: str,
        status: ExitStatus,
        signal_sent: int,
        stdout: bytes = b"",
        stderr: bytes = b"",
        crash_report: str | None = None,
        diagnostics: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, diagnostics=diagnostics)
        self.label = label
        self.status = status
        self.signal_sent = signal_sent
        self.stdout = stdout
        self.stderr = stderr
        self.crash_report = crash_report

    @property
    def collected_bytes(self) -> int:
        """Total number of output bytes captured before the deadline hit."""
        return len(self.stdout) + len(self.stderr)
