"""Child environment construction and interpreter resolution."""

from __future__ import annotations

from collections.abc import Mapping
import logging
import os
import sys

from procharness.models import NEUTRAL_LOCALE

logger = logging.getLogger(__name__)

LOCALE_VARIABLES: tuple[str, ...] = ("LANG", "LC_ALL", "LC_CTYPE")

INTERPRETER_ENV_VAR = "PROCHARNESS_INTERPRETER"


def build_child_env(
    overrides: Mapping[str, str] | None = None,
    *,
    locale: str = NEUTRAL_LOCALE,
    locale_variables: tuple[str, ...] = LOCALE_VARIABLES,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the environment for a child process.

    Starts from a copy of *base* (the parent's environment by default),
    forces every locale variable to *locale* so output does not depend on
    the machine running the harness, then applies *overrides*. Overrides
    win over the forced locale.

    Args:
        overrides: Caller-supplied variables.
        locale: Value forced onto the locale variables.
        locale_variables: Names of the locale variables to force.
        base: Environment to start from; ``os.environ`` when ``None``.

    Returns:
        A new dict suitable for the ``env`` argument of ``subprocess.Popen``.
    """
    env = dict(os.environ if base is None else base)
    for name in locale_variables:
        env[name] = locale
    if overrides:
        env.update(overrides)
    return env


def resolve_interpreter(configured: str | None = None) -> str:
    """Return the interpreter used for child processes.

    Resolution order: the ``PROCHARNESS_INTERPRETER`` environment variable,
    then *configured*, then the running interpreter.
    """
    from_env = os.environ.get(INTERPRETER_ENV_VAR)
    if from_env:
        logger.debug("Interpreter taken from %s: %s", INTERPRETER_ENV_VAR, from_env)
        return from_env
    if configured:
        return configured
    return sys.executable
