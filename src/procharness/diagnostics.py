"""Crash-report lookup for children killed by an abort-class signal.

macOS writes a crash report for every process that dies from ``SIGABRT``,
``SIGSEGV`` and similar signals. The harness reads the report belonging to
its own child, attaches it to the failure message, and deletes it so
reports do not pile up across test runs. Other platforms have nothing to
recover.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
import logging
from pathlib import Path
import re
import sys
import time
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DIAGNOSTIC_REPORTS_PATH = Path("~/Library/Logs/DiagnosticReports").expanduser()
DIAGNOSTIC_REPORTS_TIMEFORMAT = "%Y-%m-%d-%H%M%S"
REPORTED_SIGNALS = frozenset({"ABRT", "QUIT", "SEGV", "ILL"})

_TIMESTAMP_LENGTH = len(datetime(2000, 1, 1).strftime(DIAGNOSTIC_REPORTS_TIMEFORMAT))


@runtime_checkable
class CrashReportLocator(Protocol):
    """Finds (and consumes) the crash report for one terminated child.

    Any callable ``(signal_name, executable, pid, since) -> str | None``
    satisfies this protocol. ``signal_name`` has no ``SIG`` prefix and is
    ``None`` when the child was not signaled.
    """

    def __call__(  # noqa: D102
        self,
        signal_name: str | None,
        executable: str,
        pid: int,
        since: datetime,
    ) -> str | None: ...


def no_crash_reports(
    signal_name: str | None,
    executable: str,
    pid: int,
    since: datetime,
) -> str | None:
    """Locator for platforms that do not persist crash reports."""
    return None


class DiagnosticReports:
    """Locator for the macOS ``DiagnosticReports`` directory.

    Reports are named ``<command>_<YYYY-mm-dd-HHMMSS>[-_]<suffix>.crash``
    and start with a ``Process: <command> [<pid>]`` line. The crash reporter
    writes them asynchronously, so the directory is polled a few times.

    Args:
        directory: Where reports are written.
        attempts: How many times to scan the directory.
        interval: Seconds between scans.
        sleep: Sleep function, replaceable in tests.
    """

    def __init__(
        self,
        directory: Path = DIAGNOSTIC_REPORTS_PATH,
        *,
        attempts: int = 30,
        interval: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.directory = Path(directory)
        self.attempts = attempts
        self.interval = interval
        self._sleep = sleep

    def __call__(
        self,
        signal_name: str | None,
        executable: str,
        pid: int,
        since: datetime,
    ) -> str | None:
        if signal_name not in REPORTED_SIGNALS:
            return None
        command = Path(executable).name
        header = re.compile(
            rf"Process:\s+{re.escape(command)} \[{pid}\]$", re.MULTILINE
        )
        for attempt in range(self.attempts):
            if attempt:
                self._sleep(self.interval)
            for path in sorted(self.directory.glob(f"{command}_*.crash")):
                if not _written_since(path, command, since):
                    continue
                try:
                    log = path.read_text(encoding="utf-8", errors="replace")
                except OSError:
                    continue
                if header.match(log):
                    path.unlink(missing_ok=True)
                    (path.parent / f".{path.name}.plist").unlink(missing_ok=True)
                    logger.debug("Consumed crash report %s for pid %d", path, pid)
                    return log
        return None


def _written_since(path: Path, command: str, since: datetime) -> bool:
    """Whether the timestamp in a report file name is not older than *since*."""
    stamp = path.name[len(command) + 1 : len(command) + 1 + _TIMESTAMP_LENGTH]
    try:
        written = datetime.strptime(stamp, DIAGNOSTIC_REPORTS_TIMEFORMAT)
    except ValueError:
        return False
    return written >= since.replace(microsecond=0)


def default_locator(platform: str | None = None) -> CrashReportLocator:
    """Return the crash-report locator for *platform* (``sys.platform`` by default)."""
    platform = sys.platform if platform is None else platform
    if platform == "darwin":
        return DiagnosticReports()
    return no_crash_reports
