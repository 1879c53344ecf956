"""Signal policy and delivery for terminating a timed-out child.

The policy table maps a platform class to the pair of signals used during
escalation. On Windows ``SIGTERM`` is not a request the child can handle, so
the first signal is already the forceful one.
"""

from __future__ import annotations

from enum import StrEnum
import logging
import os
import signal
import sys

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class PlatformClass(StrEnum):
    """Platform families with distinct termination semantics."""

    POSIX = "posix"
    WINDOWS = "windows"


class SignalPolicy(BaseModel):
    """Signals sent, in order, to a child that missed its deadline.

    Attributes:
        terminate: Name of the first signal (without ``SIG`` prefix).
        kill: Name of the forceful signal escalated to.
    """

    model_config = ConfigDict(frozen=True)

    terminate: str
    kill: str

    @property
    def terminate_signal(self) -> int:
        return signal_number(self.terminate)

    @property
    def kill_signal(self) -> int:
        return signal_number(self.kill)


SIGNAL_POLICIES: dict[PlatformClass, SignalPolicy] = {
    PlatformClass.POSIX: SignalPolicy(terminate="TERM", kill="KILL"),
    PlatformClass.WINDOWS: SignalPolicy(terminate="KILL", kill="KILL"),
}

# Windows has no SIGKILL; TerminateProcess is what os.kill does with SIGTERM.
_FALLBACK_NUMBERS = {"KILL": signal.SIGTERM}


def signal_number(name: str) -> int:
    """Translate a signal name such as ``"KILL"`` into its number.

    Raises:
        ValueError: If the name is unknown on every platform.
    """
    sig = getattr(signal, f"SIG{name}", None)
    if sig is None:
        sig = _FALLBACK_NUMBERS.get(name)
    if sig is None:
        msg = f"Unknown signal name: {name!r}"
        raise ValueError(msg)
    return int(sig)


def platform_class(platform: str | None = None) -> PlatformClass:
    """Classify *platform* (``sys.platform`` by default)."""
    platform = sys.platform if platform is None else platform
    if platform.startswith(("win32", "cygwin", "msys")):
        return PlatformClass.WINDOWS
    return PlatformClass.POSIX


def policy_for(platform: str | None = None) -> SignalPolicy:
    """Return the escalation policy for *platform*."""
    return SIGNAL_POLICIES[platform_class(platform)]


def termination_target(pid: int, process_group: int | None) -> tuple[int, bool]:
    """Work out who receives termination signals.

    Args:
        pid: Process id of the child.
        process_group: The invocation's process-group option.

    Returns:
        ``(target, is_group)``: a process id, or a process-group id when
        ``is_group`` is true.
    """
    if process_group is None:
        return pid, False
    if process_group == 0:
        return pid, True
    return process_group, True


def send_signal(target: int, sig: int, *, group: bool) -> bool:
    """Deliver *sig* to a process or process group.

    A target that no longer exists is treated as already terminated.

    Returns:
        ``True`` if the signal was delivered, ``False`` if the target was gone.
    """
    try:
        if group:
            os.killpg(target, sig)
        else:
            os.kill(target, sig)
    except ProcessLookupError:
        logger.debug("Signal %d target %d already gone", sig, target)
        return False
    logger.debug("Sent signal %d to %s %d", sig, "group" if group else "pid", target)
    return True
