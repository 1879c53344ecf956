"""Bounded subprocess runner.

Runs one child process per call: launches it, feeds its stdin, collects its
output streams concurrently, and enforces the invocation's deadline. A child
that misses the deadline receives the platform's terminate signal, then the
kill signal once the grace period has passed, and is always reaped before
:class:`~procharness.errors.ExecutionTimeoutError` is raised.

The supervisor moves through these states::

    RUNNING -> COMPLETED
    RUNNING -> TIMED_OUT -> TERMINATING -> [ESCALATED] -> REAPED -> FAILED

Cleanup runs on every path: workers are stopped and joined, then every pipe
endpoint that is still open is closed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import contextlib
from enum import StrEnum
import inspect
import logging
import time
from typing import NoReturn

from procharness.context import current_context
from procharness.diagnostics import CrashReportLocator, default_locator
from procharness.errors import EscalationError, ExecutionTimeoutError, StreamReadError
from procharness.failure import describe_failure, locate_crash_report
from procharness.launcher import ChildHandle, launch
from procharness.models import ExecutionOutcome, ExitStatus, Invocation
from procharness.signals import (
    SignalPolicy,
    policy_for,
    send_signal,
    termination_target,
)
from procharness.streams import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    Collector,
    Reaper,
    Writer,
)

logger = logging.getLogger(__name__)


class SupervisorState(StrEnum):
    """Lifecycle states of a supervised child."""

    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    TERMINATING = "terminating"
    ESCALATED = "escalated"
    REAPED = "reaped"
    FAILED = "failed"


def caller_label(skip: int = 1) -> str:
    """Qualified name of a function further up the call stack.

    With the default *skip*, returns the caller of the function that calls
    ``caller_label``.
    """
    frame = inspect.currentframe()
    try:
        for _ in range(skip + 1):
            if frame is None:
                break
            frame = frame.f_back
        return frame.f_code.co_qualname if frame is not None else "<unknown>"
    finally:
        del frame


def _remaining(deadline: float) -> float:
    return max(0.0, deadline - time.monotonic())


def _apply_filter(data: bytes, filter_: Callable[[bytes], bytes] | None) -> bytes:
    return filter_(data) if filter_ is not None else data


class Supervisor:
    """Owns one child for the duration of a single :func:`execute` call.

    Args:
        invocation: The run being supervised.
        child: Handle returned by :func:`~procharness.launcher.launch`.
        label: Name reported if the run times out.
        locator: Crash-report collaborator.
        policy: Terminate/kill signal pair.
        poll_interval: Poll period of the pipe workers.
    """

    def __init__(
        self,
        invocation: Invocation,
        child: ChildHandle,
        *,
        label: str,
        locator: CrashReportLocator,
        policy: SignalPolicy,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.invocation = invocation
        self.child = child
        self.label = label
        self.state = SupervisorState.RUNNING
        self.signals_sent: list[int] = []
        self._locator = locator
        self._policy = policy
        self._poll_interval = poll_interval
        self._writer = (
            Writer(child.stdin, invocation.stdin_data, poll_interval)
            if child.stdin is not None
            else None
        )
        self._collectors: dict[str, Collector] = {}
        if child.stdout is not None:
            self._collectors["stdout"] = Collector("stdout", child.stdout, poll_interval)
        if child.stderr is not None:
            self._collectors["stderr"] = Collector("stderr", child.stderr, poll_interval)
        self._reaper = Reaper(child.pid)
        self._status: ExitStatus | None = None
        self._closed = False

    @property
    def status(self) -> ExitStatus | None:
        """Exit status, once the child has been reaped."""
        return self._status

    def run(self) -> ExecutionOutcome:
        """Supervise the child until it completes or is terminated.

        Returns:
            The captured outcome when the child finished in time.

        Raises:
            ExecutionTimeoutError: If the deadline passed.
            EscalationError: If the child survived the kill signal for longer
                than ``kill_timeout_seconds``.
            StreamReadError: If reading an output pipe failed.
        """
        try:
            deadline = time.monotonic() + self.invocation.timeout_seconds
            for worker in self._pipe_workers():
                worker.start()
            if self._await_workers(deadline):
                return self._complete()
            return self._time_out()
        finally:
            self.close()

    def _pipe_workers(self) -> list[Writer | Collector]:
        workers: list[Writer | Collector] = []
        if self._writer is not None:
            workers.append(self._writer)
        workers.extend(self._collectors.values())
        return workers

    def _await_workers(self, deadline: float) -> bool:
        """Join the writer, then the collectors, against one deadline.

        With nothing to collect, waits for the child itself. Collectors are
        checked as each one stops, so a failed stream is reported without
        waiting for the others.

        Returns:
            ``True`` if everything finished before the deadline.

        Raises:
            StreamReadError: If a collector stopped without reaching EOF.
        """
        if self._writer is not None:
            self._writer.join(_remaining(deadline))
            if self._writer.is_alive():
                return False
            if self._writer.error is not None:
                raise self._writer.error

        if not self._collectors:
            return self._reap(_remaining(deadline)) is not None

        pending = list(self._collectors.values())
        while pending:
            for collector in [c for c in pending if not c.is_alive()]:
                self._check_collector(collector)
                pending.remove(collector)
            if not pending:
                break
            remaining = _remaining(deadline)
            if remaining <= 0:
                return False
            pending[0].join(min(remaining, self._poll_interval))
        return True

    def _check_collector(self, collector: Collector) -> None:
        """Raise if a stopped collector ended without reaching EOF."""
        if collector.error is None and collector.finished:
            return
        reason = collector.error or "collector stopped before end of file"
        msg = f"Reading {collector.stream} of pid {self.child.pid} failed: {reason}"
        raise StreamReadError(
            msg,
            stream=collector.stream,
            diagnostics={"pid": self.child.pid, "label": self.label},
        ) from collector.error

    def _reap(self, timeout: float | None) -> ExitStatus | None:
        """Wait up to *timeout* for the child to be reaped.

        Raises:
            OSError: The error ``os.waitpid`` failed with, re-raised verbatim.
        """
        if self._status is not None:
            return self._status
        if not self._reaper.wait(timeout):
            return None
        if self._reaper.error is not None:
            raise self._reaper.error
        status = ExitStatus.from_wait_status(self.child.pid, self._reaper.status or 0)
        # The child is reaped here, not by Popen.
        self.child.process.returncode = status.returncode
        self._status = status
        return status

    def _reap_blocking(self) -> ExitStatus:
        status = self._reap(None)
        if status is None:
            msg = f"Reaper for pid {self.child.pid} returned without a status"
            raise RuntimeError(msg)
        return status

    def _complete(self) -> ExecutionOutcome:
        self.state = SupervisorState.COMPLETED
        self.child.close_pipes()
        status = self._reap_blocking()
        inv = self.invocation
        stdout = self._collected("stdout")
        stderr = self._collected("stderr")
        outcome = ExecutionOutcome(
            stdout=_apply_filter(stdout, inv.stdout_filter),
            stderr=_apply_filter(stderr, inv.stderr_filter),
            status=status,
            started_at=self.child.started_wall,
            duration_seconds=time.monotonic() - self.child.started_at,
            encoding=inv.encoding or current_context().encoding,
        )
        logger.info(
            "Execution of %s completed: %s in %.3fs",
            self.label,
            status,
            outcome.duration_seconds,
        )
        return outcome

    def _collected(self, stream: str) -> bytes:
        collector = self._collectors.get(stream)
        return collector.result().data if collector is not None else b""

    def _time_out(self) -> NoReturn:
        self.state = SupervisorState.TIMED_OUT
        inv = self.invocation
        logger.warning(
            "Execution of %s exceeded %.1fs; terminating pid %d",
            self.label,
            inv.timeout_seconds,
            self.child.pid,
        )
        target, group = termination_target(self.child.pid, inv.process_group)
        kill = self._policy.kill_signal
        sig = self._policy.terminate_signal
        self.state = SupervisorState.TERMINATING
        while True:
            self.signals_sent.append(sig)
            delivered = send_signal(target, sig, group=group)
            if not delivered and group:
                # The child may have left the group it was started in.
                logger.warning(
                    "Process group %d is gone; signalling pid %d directly",
                    target,
                    self.child.pid,
                )
                target, group = self.child.pid, False
                delivered = send_signal(target, sig, group=group)
            if not delivered:
                status = self._reap_blocking()
                break
            wait = inv.kill_timeout_seconds if sig == kill else inv.grace_seconds
            status = self._reap(wait)
            if status is not None:
                break
            if sig == kill:
                self.state = SupervisorState.FAILED
                msg = (
                    f"pid {self.child.pid} survived signal {sig} "
                    f"for {inv.kill_timeout_seconds}s"
                )
                raise EscalationError(
                    msg, diagnostics={"pid": self.child.pid, "label": self.label}
                )
            logger.warning(
                "pid %d still running %.1fs after signal %d; escalating to %d",
                self.child.pid,
                inv.grace_seconds,
                sig,
                kill,
            )
            sig = kill
            self.state = SupervisorState.ESCALATED

        self.state = SupervisorState.REAPED
        self.close()
        raise self._timeout_failure(status, sig)

    def _timeout_failure(self, status: ExitStatus, sig: int) -> ExecutionTimeoutError:
        inv = self.invocation
        self.state = SupervisorState.FAILED
        stdout = self._collected("stdout")
        stderr = self._collected("stderr")
        encoding = inv.encoding or current_context().encoding
        output = (stdout + stderr).decode(encoding, errors="replace")
        crash_report = locate_crash_report(
            status, inv.executable, self._locator, self.child.started_wall
        )
        message = describe_failure(
            status,
            f"execution of {self.label} expired after {inv.timeout_seconds}s",
            output,
            crash_report,
        )
        return ExecutionTimeoutError(
            message,
            label=self.label,
            status=status,
            signal_sent=sig,
            stdout=stdout,
            stderr=stderr,
            crash_report=crash_report,
            diagnostics={
                "pid": self.child.pid,
                "signals_sent": list(self.signals_sent),
                "abandoned_streams": [
                    c.stream for c in self._collectors.values() if not c.result().finished
                ],
                "elapsed_seconds": time.monotonic() - self.child.started_at,
            },
        )

    def close(self) -> None:
        """Stop and join every worker, then close every open pipe endpoint.

        A child that is still unreaped at this point (an error interrupted
        supervision) is killed and reaped on a best-effort basis.
        """
        if self._closed:
            return
        self._closed = True
        workers = self._pipe_workers()
        for worker in workers:
            worker.stop()
        for worker in workers:
            if worker.ident is not None:
                worker.join()
        self.child.close_pipes()
        if self._status is None:
            self._abort_child()

    def _abort_child(self) -> None:
        logger.warning("pid %d unreaped during cleanup; killing it", self.child.pid)
        target, group = termination_target(self.child.pid, self.invocation.process_group)
        kill = self._policy.kill_signal
        with contextlib.suppress(OSError):
            if not send_signal(target, kill, group=group) and group:
                send_signal(self.child.pid, kill, group=False)
        with contextlib.suppress(OSError):
            self._reap(self.invocation.grace_seconds)


def execute(
    invocation: Invocation,
    *,
    locator: CrashReportLocator | None = None,
    policy: SignalPolicy | None = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> ExecutionOutcome:
    """Run *invocation* to completion or until its deadline.

    Args:
        invocation: What to run and how.
        locator: Crash-report collaborator; the platform default if ``None``.
        policy: Signal policy; the platform default if ``None``.
        poll_interval: Poll period of the pipe workers.

    Returns:
        The captured outcome of a run that finished before its deadline.

    Raises:
        SpawnError: If the child could not be started.
        ExecutionTimeoutError: If the child missed its deadline. The child
            has been terminated and reaped.
        EscalationError: If the child outlived ``kill_timeout_seconds``
            after the kill signal.
        StreamReadError: If reading an output pipe failed.
    """
    label = invocation.label or caller_label()
    child = launch(invocation)
    supervisor = Supervisor(
        invocation,
        child,
        label=label,
        locator=locator if locator is not None else default_locator(),
        policy=policy if policy is not None else policy_for(),
        poll_interval=poll_interval,
    )
    return supervisor.run()


async def execute_async(
    invocation: Invocation,
    *,
    locator: CrashReportLocator | None = None,
    policy: SignalPolicy | None = None,
) -> ExecutionOutcome:
    """Awaitable :func:`execute`, run on a worker thread.

    The timeout label defaults to the awaiting coroutine's name.
    """
    if invocation.label is None:
        invocation = invocation.model_copy(update={"label": caller_label()})
    return await asyncio.to_thread(
        execute, invocation, locator=locator, policy=policy
    )

