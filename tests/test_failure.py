"""Tests for failure descriptions of killed or crashed children."""

from __future__ import annotations

from datetime import datetime
import signal

from hypothesis import given, strategies as st
from procharness.failure import describe_failure, locate_crash_report, signal_description
import pytest

from tests.conftest import RecordingLocator, make_status

_SINCE = datetime(2026, 1, 1)


@pytest.mark.unit
class TestSignalDescription:
    """Short descriptions of how a child ended."""

    def test_signal(self) -> None:
        """Signals render with name and number."""
        status = make_status(signal=signal.SIGKILL)
        assert signal_description(status) == f"SIGKILL (signal {int(signal.SIGKILL)})"

    def test_core_dump(self) -> None:
        """Core dumps are mentioned."""
        status = make_status(signal=signal.SIGABRT, core_dumped=True)
        assert signal_description(status).endswith("(core dumped)")

    def test_unknown_signal(self) -> None:
        """Unnamed signals render by number only."""
        assert signal_description(make_status(signal=250)) == "signal 250"

    def test_exit(self) -> None:
        """Normal exits render their status."""
        assert signal_description(make_status(exit_code=2)) == "exit status 2"


@pytest.mark.unit
class TestDescribeFailure:
    """Multi-line failure messages."""

    def test_layout(self) -> None:
        """Message, status line, then quoted output and report."""
        status = make_status(pid=77, signal=signal.SIGSEGV, core_dumped=True)
        text = describe_failure(status, "it broke", "line 1\nline 2", "Process: x [77]")
        assert text.splitlines() == [
            "it broke",
            f"pid 77 killed by SIGSEGV (signal {int(signal.SIGSEGV)}) (core dumped)",
            "| line 1",
            "| line 2",
            "| Process: x [77]",
        ]

    def test_without_message_or_output(self) -> None:
        """Only the status line remains."""
        text = describe_failure(make_status(pid=5, exit_code=1))
        assert text == "pid 5 exited with exit status 1"

    @given(lines=st.lists(st.text(alphabet="abc xyz", min_size=1), min_size=1, max_size=8))
    def test_every_output_line_is_quoted(self, lines: list[str]) -> None:
        """Each output line appears with the quote prefix."""
        text = describe_failure(make_status(signal=signal.SIGTERM), "", "\n".join(lines))
        quoted = text.splitlines()[1:]
        assert quoted == [f"| {line}" for line in lines]


@pytest.mark.unit
class TestLocateCrashReport:
    """The locator is consulted only for signaled children."""

    def test_signaled(self) -> None:
        """Signal name, executable, pid and start time are passed."""
        locator = RecordingLocator("report text")
        status = make_status(pid=9, signal=signal.SIGABRT)
        assert locate_crash_report(status, "/bin/x", locator, _SINCE) == "report text"
        assert locator.calls == [("ABRT", "/bin/x", 9, _SINCE)]

    def test_normal_exit(self) -> None:
        """Normal exits never trigger a lookup."""
        locator = RecordingLocator("unused")
        assert locate_crash_report(make_status(), "/bin/x", locator, _SINCE) is None
        assert locator.calls == []
