"""Human-readable descriptions of abnormal child exits."""

from __future__ import annotations

from datetime import datetime
import logging

from procharness.diagnostics import CrashReportLocator
from procharness.models import ExitStatus

logger = logging.getLogger(__name__)


def signal_description(status: ExitStatus) -> str:
    """Describe how the child ended, e.g. ``"SIGKILL (signal 9)"``.

    Appends ``" (core dumped)"`` when the kernel wrote a core file. For a
    normal exit returns ``"exit status N"``.
    """
    if status.signal is None:
        return f"exit status {status.exit_code}"
    desc = f"signal {status.signal}"
    if status.signal_name:
        desc = f"SIG{status.signal_name} ({desc})"
    if status.core_dumped:
        desc += " (core dumped)"
    return desc


def locate_crash_report(
    status: ExitStatus,
    executable: str,
    locator: CrashReportLocator,
    since: datetime,
) -> str | None:
    """Ask *locator* for the crash report of a signaled child."""
    if not status.signaled:
        return None
    report = locator(status.signal_name, executable, status.pid, since)
    if report is not None:
        logger.debug("Recovered crash report for pid %d", status.pid)
    return report


def _quoted(text: str) -> str:
    return "\n".join(f"| {line}" for line in text.splitlines())


def describe_failure(
    status: ExitStatus,
    message: str = "",
    output: str = "",
    crash_report: str | None = None,
) -> str:
    """Build the failure message for a child that was killed or crashed.

    Layout::

        <message>
        pid 1234 killed by SIGSEGV (signal 11) (core dumped)
        | captured output, one quoted line per output line
        | crash report, quoted the same way

    Args:
        status: Exit status of the reaped child.
        message: Caller-supplied context, placed first when non-empty.
        output: Output captured from the child.
        crash_report: Recovered crash-report text.

    Returns:
        The assembled multi-line description.
    """
    parts: list[str] = []
    if message:
        parts.append(message)
    verb = "killed by" if status.signaled else "exited with"
    parts.append(f"pid {status.pid} {verb} {signal_description(status)}")
    if output:
        parts.append(_quoted(output))
    if crash_report:
        parts.append(_quoted(crash_report))
    return "\n".join(parts)
