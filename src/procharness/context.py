"""Scoped harness configuration.

Verbosity and output encoding live in a ``ContextVar`` instead of
module-level flags. :func:`scoped_context` installs a modified copy for the
duration of a ``with`` block and restores the previous value on every exit
path, including exceptions, and concurrent tasks never see each other's
changes.

Verbosity has three levels, mirroring the interpreter's warning switches:
``None`` silences warnings, ``False`` shows default warnings, ``True``
shows every warning.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any
import warnings

from pydantic import BaseModel, ConfigDict


class HarnessContext(BaseModel):
    """Settings threaded through the assertion helpers.

    Attributes:
        verbose: Warning verbosity (``None``, ``False`` or ``True``).
        encoding: Encoding used to decode captured child output.
    """

    model_config = ConfigDict(frozen=True)

    verbose: bool | None = False
    encoding: str = "utf-8"


_CURRENT: ContextVar[HarnessContext] = ContextVar(
    "procharness_context", default=HarnessContext()
)


def current_context() -> HarnessContext:
    """Return the context active in the calling task or thread."""
    return _CURRENT.get()


@contextmanager
def scoped_context(**changes: Any) -> Iterator[HarnessContext]:
    """Activate a copy of the current context with *changes* applied.

    Raises:
        pydantic.ValidationError: If a change has the wrong type.
    """
    ctx = HarnessContext(**{**_CURRENT.get().model_dump(), **changes})
    token = _CURRENT.set(ctx)
    try:
        yield ctx
    finally:
        _CURRENT.reset(token)


_WARNING_ACTIONS: dict[bool | None, str] = {
    None: "ignore",
    False: "default",
    True: "always",
}


def interpreter_flags(ctx: HarnessContext | None = None) -> list[str]:
    """Command-line flags giving a child interpreter the same warning verbosity.

    Uses the current context when *ctx* is not passed.
    """
    verbose = (ctx or current_context()).verbose
    if verbose is None:
        return ["-W", "ignore"]
    if verbose:
        return ["-W", "always"]
    return []


@contextmanager
def warning_scope(verbose: bool | None) -> Iterator[list[warnings.WarningMessage]]:
    """Run a block at the given verbosity, recording emitted warnings.

    Yields:
        The list that receives every warning shown at this verbosity.
    """
    with scoped_context(verbose=verbose), warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter(_WARNING_ACTIONS[verbose])
        yield caught


@contextmanager
def capture_warnings() -> Iterator[list[warnings.WarningMessage]]:
    """Record every warning emitted in the block."""
    with warning_scope(True) as caught:
        yield caught


@contextmanager
def suppress_warnings() -> Iterator[None]:
    """Silence all warnings in the block."""
    with warning_scope(None):
        yield


@contextmanager
def default_warnings() -> Iterator[None]:
    """Apply the default warning filter in the block."""
    with warning_scope(False):
        yield
