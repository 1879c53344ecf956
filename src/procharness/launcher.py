"""Launcher: spawns the child process attached to fresh pipes."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
import io
import logging
import shlex
import subprocess
import time
from typing import Any

from procharness.environment import build_child_env
from procharness.errors import SpawnError
from procharness.models import CaptureMode, Invocation

logger = logging.getLogger(__name__)


class GroupDisposition(StrEnum):
    """Process group the child was placed in."""

    INHERITED = "inherited"
    NEW = "new"
    EXPLICIT = "explicit"


def _disposition(process_group: int | None) -> GroupDisposition:
    if process_group is None:
        return GroupDisposition.INHERITED
    if process_group == 0:
        return GroupDisposition.NEW
    return GroupDisposition.EXPLICIT


class ChildHandle:
    """A live child process and the parent's ends of its pipes.

    Owned by a single supervisor for its whole lifetime. The child-side
    pipe ends are already closed in the parent when the handle is created.
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        disposition: GroupDisposition,
    ) -> None:
        self.process = process
        self.pid = process.pid
        self.disposition = disposition
        self.started_at = time.monotonic()
        self.started_wall = datetime.now()
        self.stdin: io.FileIO | None = process.stdin  # type: ignore[assignment]
        self.stdout: io.FileIO | None = process.stdout  # type: ignore[assignment]
        self.stderr: io.FileIO | None = process.stderr  # type: ignore[assignment]

    @property
    def pipes(self) -> list[io.FileIO]:
        """Parent-side pipe endpoints that exist for this child."""
        return [p for p in (self.stdin, self.stdout, self.stderr) if p is not None]

    def close_pipes(self) -> None:
        """Close every parent-side pipe endpoint that is still open."""
        for pipe in self.pipes:
            if not pipe.closed:
                pipe.close()
                logger.debug("Closed pipe fd of pid %d", self.pid)


def launch(invocation: Invocation) -> ChildHandle:
    """Spawn the child described by *invocation*.

    Stdin is always piped. Stdout and stderr are piped according to the
    capture mode; in ``merged`` mode stderr shares the stdout pipe, and
    uncaptured streams are inherited from the parent.

    Args:
        invocation: What to run and how.

    Returns:
        A handle holding the process and the parent's pipe endpoints.

    Raises:
        SpawnError: If the process could not be created.
    """
    capture = invocation.capture
    stdout = subprocess.PIPE if capture.pipes_stdout else None
    if capture is CaptureMode.MERGED:
        stderr: int | None = subprocess.STDOUT
    elif capture.pipes_stderr:
        stderr = subprocess.PIPE
    else:
        stderr = None

    extra: dict[str, Any] = {}
    if invocation.process_group is not None:
        extra["process_group"] = invocation.process_group

    env = build_child_env(invocation.env, locale=invocation.locale)
    try:
        process = subprocess.Popen(  # nosec B603
            invocation.argv,
            stdin=subprocess.PIPE,
            stdout=stdout,
            stderr=stderr,
            env=env,
            cwd=invocation.cwd,
            bufsize=0,
            **extra,
        )
    except (OSError, ValueError) as exc:
        msg = f"Failed to spawn {invocation.executable}: {exc}"
        raise SpawnError(
            msg,
            diagnostics={"argv": invocation.argv, "cwd": invocation.cwd},
        ) from exc

    handle = ChildHandle(process, _disposition(invocation.process_group))
    logger.info(
        "Launched pid %d (%s group, capture=%s): %s",
        handle.pid,
        handle.disposition,
        capture,
        shlex.join(invocation.argv),
    )
    return handle
