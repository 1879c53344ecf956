"""Core data models for the process harness.

Defines the immutable description of a single child-process run
(``Invocation``), the decoded exit disposition of a reaped child
(``ExitStatus``), the per-stream collection record (``CollectorResult``),
and the terminal result returned to the caller (``ExecutionOutcome``).
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import StrEnum
import math
import os
import signal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_GRACE_SECONDS = 1.0
NEUTRAL_LOCALE = "C"


class CaptureMode(StrEnum):
    """Which of the child's output streams are captured into memory.

    Streams that are not captured are inherited from the parent process;
    no pipe is created for them.
    """

    NONE = "none"
    STDOUT = "stdout"
    STDERR = "stderr"
    BOTH = "both"
    MERGED = "merged"

    @property
    def pipes_stdout(self) -> bool:
        """Whether the child's stdout is connected to a pipe."""
        return self in (CaptureMode.STDOUT, CaptureMode.BOTH, CaptureMode.MERGED)

    @property
    def pipes_stderr(self) -> bool:
        """Whether the child's stderr gets a pipe of its own."""
        return self in (CaptureMode.STDERR, CaptureMode.BOTH)


class Invocation(BaseModel):
    """Immutable description of one child-process run.

    Created by the caller and consumed once by
    :func:`procharness.runner.execute`.

    Attributes:
        executable: Path of the program to spawn.
        args: Arguments passed after the executable.
        env: Extra environment variables, applied after the neutral locale.
        stdin_data: Payload written to the child's stdin before it is closed.
        capture: Which output streams are captured.
        timeout_seconds: Deadline for normal completion.
        grace_seconds: Wait after the terminate signal before escalating.
        kill_timeout_seconds: Cap on the wait after the kill signal;
            ``None`` waits without bound.
        stdout_filter: Applied once to the captured stdout bytes.
        stderr_filter: Applied once to the captured stderr bytes.
        process_group: ``None`` inherits the parent's group, ``0`` starts a
            new group, a positive id joins that group.
        cwd: Working directory of the child.
        encoding: Encoding used to decode captured bytes to text.
        locale: Value forced onto the locale variables.
        label: Name reported when the run times out; defaults to the caller.
    """

    model_config = ConfigDict(frozen=True)

    executable: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)
    stdin_data: bytes = b""
    capture: CaptureMode = CaptureMode.BOTH
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    kill_timeout_seconds: float | None = None
    stdout_filter: Callable[[bytes], bytes] | None = None
    stderr_filter: Callable[[bytes], bytes] | None = None
    process_group: int | None = Field(default=None, strict=True)
    cwd: str | None = None
    encoding: str | None = None
    locale: str = NEUTRAL_LOCALE
    label: str | None = None

    @field_validator("stdin_data", mode="before")
    @classmethod
    def _encode_text_input(cls, v: object) -> object:
        """Accept ``str`` input and encode it as UTF-8."""
        if isinstance(v, str):
            return v.encode("utf-8")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _timeout_must_be_positive(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            msg = "timeout_seconds must be a finite number > 0"
            raise ValueError(msg)
        return v

    @field_validator("grace_seconds")
    @classmethod
    def _grace_must_be_non_negative(cls, v: float) -> float:
        if not math.isfinite(v) or v < 0:
            msg = "grace_seconds must be a finite number >= 0"
            raise ValueError(msg)
        return v

    @field_validator("kill_timeout_seconds")
    @classmethod
    def _kill_timeout_must_be_positive(cls, v: float | None) -> float | None:
        if v is not None and (not math.isfinite(v) or v <= 0):
            msg = "kill_timeout_seconds must be a finite number > 0 when set"
            raise ValueError(msg)
        return v

    @field_validator("process_group")
    @classmethod
    def _process_group_must_be_non_negative(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            msg = "process_group must be None, 0 or a positive group id"
            raise ValueError(msg)
        return v

    @property
    def argv(self) -> list[str]:
        """Full argument vector, executable first."""
        return [self.executable, *self.args]


class ExitStatus(BaseModel):
    """Exit disposition of a reaped child.

    Exactly one of ``exit_code`` and ``signal`` is set.

    Attributes:
        pid: Process id of the child.
        exit_code: Exit code when the child exited normally.
        signal: Signal number when the child was terminated by a signal.
        core_dumped: Whether the terminating signal produced a core dump.
    """

    model_config = ConfigDict(frozen=True)

    pid: int
    exit_code: int | None = None
    signal: int | None = None
    core_dumped: bool = False

    @model_validator(mode="after")
    def _exactly_one_disposition(self) -> ExitStatus:
        if (self.exit_code is None) == (self.signal is None):
            msg = "ExitStatus needs exactly one of exit_code or signal"
            raise ValueError(msg)
        if self.core_dumped and self.signal is None:
            msg = "core_dumped requires a terminating signal"
            raise ValueError(msg)
        return self

    @classmethod
    def from_wait_status(cls, pid: int, status: int) -> ExitStatus:
        """Decode a raw ``os.waitpid`` status word.

        Args:
            pid: Process id that was waited on.
            status: Raw status as returned by ``os.waitpid``.

        Returns:
            The decoded exit status.
        """
        if os.WIFSIGNALED(status):
            return cls(
                pid=pid,
                signal=os.WTERMSIG(status),
                core_dumped=os.WCOREDUMP(status),
            )
        return cls(pid=pid, exit_code=os.WEXITSTATUS(status))

    @property
    def signaled(self) -> bool:
        return self.signal is not None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def returncode(self) -> int:
        """Exit code in ``subprocess`` convention (negative signal number)."""
        if self.signal is not None:
            return -self.signal
        return self.exit_code  # type: ignore[return-value]

    @property
    def signal_name(self) -> str | None:
        """Signal name without the ``SIG`` prefix, e.g. ``"KILL"``."""
        if self.signal is None:
            return None
        try:
            return signal.Signals(self.signal).name.removeprefix("SIG")
        except ValueError:
            return None

    def __str__(self) -> str:
        if self.signal is not None:
            desc = f"pid {self.pid} SIG{self.signal_name or '?'} (signal {self.signal})"
            if self.core_dumped:
                desc += " (core dumped)"
            return desc
        return f"pid {self.pid} exit {self.exit_code}"


class CollectorResult(BaseModel):
    """Bytes accumulated by one collector.

    Attributes:
        stream: ``"stdout"`` or ``"stderr"``.
        data: Everything read from the pipe.
        finished: ``True`` when the pipe reached EOF, ``False`` when the
            collector was abandoned at the deadline.
    """

    model_config = ConfigDict(frozen=True)

    stream: str
    data: bytes = b""
    finished: bool = False


class ExecutionOutcome(BaseModel):
    """Captured result of a run that finished before its deadline.

    Attributes:
        stdout: Captured stdout, after the stdout filter.
        stderr: Captured stderr, after the stderr filter.
        status: Exit disposition of the child.
        started_at: Wall-clock time the child was spawned.
        duration_seconds: Wall-clock time from spawn to reap.
        encoding: Encoding used by the ``*_text`` helpers.
    """

    model_config = ConfigDict(frozen=True)

    stdout: bytes = b""
    stderr: bytes = b""
    status: ExitStatus
    started_at: datetime
    duration_seconds: float
    encoding: str = "utf-8"

    @property
    def exit_code(self) -> int | None:
        return self.status.exit_code

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode(self.encoding, errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode(self.encoding, errors="replace")
