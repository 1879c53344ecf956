"""Tests for deadline enforcement and TERM -> KILL escalation.

Every timed-out child must be signaled, reaped, and reported through
``ExecutionTimeoutError`` with whatever output it produced in time.
"""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path
import signal
import sys
import time

from procharness import runner
from procharness.errors import EscalationError, ExecutionTimeoutError
from procharness.launcher import ChildHandle, launch
from procharness.signals import SignalPolicy
import pytest

from tests.conftest import RecordingLocator, python_child

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")

_IGNORE_TERM = """
    import signal, time
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("ready", flush=True)
    time.sleep(60)
    """

_SLEEPER = """
    import time
    print("sleeping", flush=True)
    time.sleep(60)
    """


def _alive(pid: int) -> bool:
    """Whether *pid* is a running (non-zombie) process, per /proc."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


@pytest.mark.integration
class TestEscalation:
    """Children that miss the deadline are terminated, then killed."""

    def test_term_ignoring_child_is_killed(self) -> None:
        """TERM is ignored, so KILL follows after the grace period."""
        inv = python_child(_IGNORE_TERM, timeout_seconds=1, grace_seconds=1)
        start = time.monotonic()
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            runner.execute(inv)
        elapsed = time.monotonic() - start
        exc = exc_info.value
        assert exc.status.signal == signal.SIGKILL
        assert exc.status.core_dumped is False
        assert exc.signal_sent == signal.SIGKILL
        assert exc.diagnostics["signals_sent"] == [signal.SIGTERM, signal.SIGKILL]
        assert exc.stdout == b"ready\n"
        assert exc.collected_bytes == len(b"ready\n")
        assert 1.9 <= elapsed < 8

    def test_term_honoring_child_stops_at_term(self) -> None:
        """A child that exits on TERM is never sent KILL."""
        start = time.monotonic()
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            runner.execute(python_child(_SLEEPER, timeout_seconds=0.5, grace_seconds=5))
        elapsed = time.monotonic() - start
        exc = exc_info.value
        assert exc.status.signal == signal.SIGTERM
        assert exc.diagnostics["signals_sent"] == [signal.SIGTERM]
        assert elapsed < 5

    def test_message_names_label_and_signal(self) -> None:
        """The failure text names the label, the deadline and the output."""
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            runner.execute(
                python_child(_SLEEPER, timeout_seconds=0.5, label="slow-step")
            )
        text = str(exc_info.value)
        assert text.startswith("execution of slow-step expired after 0.5s")
        assert "killed by SIGTERM" in text
        assert "| sleeping" in text
        assert exc_info.value.label == "slow-step"

    def test_default_label_is_calling_test(self) -> None:
        """Without a label the calling function is named."""
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            runner.execute(python_child(_SLEEPER, timeout_seconds=0.3))
        assert exc_info.value.label.endswith("test_default_label_is_calling_test")

    def test_windows_policy_kills_first(self) -> None:
        """With KILL as the first signal, TERM handlers do not matter."""
        policy = SignalPolicy(terminate="KILL", kill="KILL")
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            runner.execute(
                python_child(_IGNORE_TERM, timeout_seconds=0.5, grace_seconds=5),
                policy=policy,
            )
        exc = exc_info.value
        assert exc.status.signal == signal.SIGKILL
        assert exc.diagnostics["signals_sent"] == [signal.SIGKILL]

    def test_unread_stdin_counts_against_deadline(self) -> None:
        """A child that never reads its input times out like any other."""
        with pytest.raises(ExecutionTimeoutError):
            runner.execute(
                python_child(
                    "import time; time.sleep(60)",
                    stdin_data=b"z" * (1 << 20),
                    timeout_seconds=0.5,
                )
            )

    def test_crash_report_lookup_for_signaled_child(
        self, locator: RecordingLocator
    ) -> None:
        """The locator is asked about the terminated child."""
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            runner.execute(python_child(_SLEEPER, timeout_seconds=0.3), locator=locator)
        assert len(locator.calls) == 1
        signal_name, executable, pid, _since = locator.calls[0]
        assert signal_name == "TERM"
        assert executable == sys.executable
        assert pid == exc_info.value.status.pid
        assert exc_info.value.crash_report is None


@pytest.mark.integration
class TestProcessGroupTermination:
    """Group options decide who receives the signals."""

    @pytest.mark.skipif(sys.platform != "linux", reason="reads /proc")
    def test_new_group_kills_grandchildren(self) -> None:
        """Signals reach every process in the child's new group."""
        code = """
            import subprocess, sys, time
            grandchild = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
            print(grandchild.pid, flush=True)
            time.sleep(60)
            """
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            runner.execute(python_child(code, timeout_seconds=1.5, process_group=0))
        grandchild = int(exc_info.value.stdout.split()[0])
        deadline = time.monotonic() + 5
        while _alive(grandchild) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not _alive(grandchild)

    def test_new_group_uses_killpg(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Group 0 signals the group led by the child."""
        calls: list[tuple[int, int, bool]] = []
        real_send = runner.send_signal

        def _spy(target: int, sig: int, *, group: bool) -> bool:
            calls.append((target, sig, group))
            return real_send(target, sig, group=group)

        monkeypatch.setattr(runner, "send_signal", _spy)
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            runner.execute(python_child(_SLEEPER, timeout_seconds=0.3, process_group=0))
        pid = exc_info.value.status.pid
        assert calls[0] == (pid, signal.SIGTERM, True)

    def test_departed_group_falls_back_to_pid(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        """If the group is gone the child itself is signaled, not waited on."""
        calls: list[tuple[int, int, bool]] = []
        real_send = runner.send_signal

        def _group_gone(target: int, sig: int, *, group: bool) -> bool:
            calls.append((target, sig, group))
            if group:
                return False
            return real_send(target, sig, group=group)

        monkeypatch.setattr(runner, "send_signal", _group_gone)
        start = time.monotonic()
        with (
            caplog.at_level(logging.WARNING, logger="procharness"),
            pytest.raises(ExecutionTimeoutError) as exc_info,
        ):
            runner.execute(
                python_child(_SLEEPER, timeout_seconds=0.3, process_group=0)
            )
        exc = exc_info.value
        pid = exc.status.pid
        assert calls[:2] == [(pid, signal.SIGTERM, True), (pid, signal.SIGTERM, False)]
        assert exc.status.signal == signal.SIGTERM
        assert time.monotonic() - start < 10
        assert any("signalling pid" in r.getMessage() for r in caplog.records)

    def test_departed_group_escalates_on_pid(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """After the fallback, KILL also goes to the child's pid."""
        calls: list[tuple[int, int, bool]] = []
        real_send = runner.send_signal

        def _group_gone(target: int, sig: int, *, group: bool) -> bool:
            calls.append((target, sig, group))
            if group:
                return False
            return real_send(target, sig, group=group)

        monkeypatch.setattr(runner, "send_signal", _group_gone)
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            runner.execute(
                python_child(
                    _IGNORE_TERM, timeout_seconds=0.5, grace_seconds=0.3, process_group=0
                )
            )
        exc = exc_info.value
        pid = exc.status.pid
        assert exc.status.signal == signal.SIGKILL
        assert calls[-1] == (pid, signal.SIGKILL, False)
        assert exc.diagnostics["signals_sent"] == [signal.SIGTERM, signal.SIGKILL]


@pytest.mark.integration
class TestTerminationEdgeCases:
    """Races between the deadline and the child's own exit."""

    def test_vanished_target_is_treated_as_terminated(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """ESRCH from the terminate signal skips escalation and reaps."""
        monkeypatch.setattr(runner, "send_signal", lambda *_a, **_k: False)
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            runner.execute(
                python_child("import time; time.sleep(1.2)", timeout_seconds=0.3)
            )
        exc = exc_info.value
        assert exc.status.exit_code == 0
        assert exc.diagnostics["signals_sent"] == [signal.SIGTERM]

    def test_kill_timeout_raises_escalation_error(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A child outliving the capped kill wait raises EscalationError."""
        sent: list[int] = []

        def _swallow(target: int, sig: int, *, group: bool) -> bool:
            sent.append(sig)
            return True

        monkeypatch.setattr(runner, "send_signal", _swallow)
        with pytest.raises(EscalationError) as exc_info:
            runner.execute(
                python_child(
                    "import time; time.sleep(30)",
                    timeout_seconds=0.3,
                    grace_seconds=0.2,
                    kill_timeout_seconds=0.2,
                )
            )
        pid = exc_info.value.diagnostics["pid"]
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGKILL)
        assert sent[:2] == [signal.SIGTERM, signal.SIGKILL]

    def test_pipes_closed_after_timeout(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Every parent-side pipe end is closed on the failure path."""
        handles: list[ChildHandle] = []

        def _launch(invocation):  # type: ignore[no-untyped-def]
            handle = launch(invocation)
            handles.append(handle)
            return handle

        monkeypatch.setattr(runner, "launch", _launch)
        with pytest.raises(ExecutionTimeoutError):
            runner.execute(python_child(_SLEEPER, timeout_seconds=0.3))
        assert all(p.closed for p in handles[0].pipes)

    def test_timeout_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Deadline misses and escalations are logged at WARNING."""
        with (
            caplog.at_level(logging.WARNING, logger="procharness"),
            pytest.raises(ExecutionTimeoutError),
        ):
            runner.execute(
                python_child(
                    _IGNORE_TERM, timeout_seconds=0.5, grace_seconds=0.3, label="stuck"
                )
            )
        messages = [r.getMessage() for r in caplog.records]
        assert any("Execution of stuck exceeded 0.5s" in m for m in messages)
        assert any("escalating" in m for m in messages)
