"""Harness configuration and logging setup.

``HarnessConfig`` holds the defaults applied to invocations built through
:meth:`HarnessConfig.build_invocation`: interpreter, deadline, grace period,
and neutral locale. It can be loaded from a YAML mapping with
:func:`load_config`.
"""

from __future__ import annotations

from collections.abc import Callable
import logging
import math
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator
import yaml

from procharness.environment import resolve_interpreter
from procharness.models import (
    DEFAULT_GRACE_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    NEUTRAL_LOCALE,
    Invocation,
)

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
_CONSOLE_HANDLER = "procharness.console"


class HarnessConfig(BaseModel):
    """Defaults for child-process invocations.

    Attributes:
        interpreter: Child interpreter; resolved via
            :func:`~procharness.environment.resolve_interpreter` when ``None``.
        timeout_seconds: Deadline for normal completion.
        grace_seconds: Wait between the terminate and kill signals.
        kill_timeout_seconds: Optional cap on the wait after the kill signal.
        neutral_locale: Value forced onto ``LANG``, ``LC_ALL`` and ``LC_CTYPE``.
        log_level: Logging level string.
        log_file: Optional log file path.
        log_format: Format string for the handlers added by
            :func:`configure_logging`.
    """

    model_config = ConfigDict(frozen=True)

    interpreter: str | None = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    kill_timeout_seconds: float | None = None
    neutral_locale: str = NEUTRAL_LOCALE
    log_level: str = "INFO"
    log_file: str | None = None
    log_format: str = DEFAULT_LOG_FORMAT

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

    @field_validator("log_level")
    @classmethod
    def _must_be_known_level(cls, v: str) -> str:
        if not isinstance(logging.getLevelName(v.upper()), int):
            msg = f"Unknown log level: {v!r}"
            raise ValueError(msg)
        return v.upper()

    def build_invocation(self, *args: str, **overrides: Any) -> Invocation:
        """Build an invocation of the configured interpreter.

        Args:
            *args: Arguments passed to the interpreter.
            **overrides: Any ``Invocation`` field, taking precedence over
                the configured defaults.

        Returns:
            A validated ``Invocation``.
        """
        fields: dict[str, Any] = {
            "executable": resolve_interpreter(self.interpreter),
            "args": args,
            "timeout_seconds": self.timeout_seconds,
            "grace_seconds": self.grace_seconds,
            "kill_timeout_seconds": self.kill_timeout_seconds,
            "locale": self.neutral_locale,
        }
        fields.update(overrides)
        return Invocation(**fields)


def load_config(path: str | Path) -> HarnessConfig:
    """Load a ``HarnessConfig`` from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file does not contain a YAML mapping.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"config file not found: {path}"
        raise FileNotFoundError(msg)

    with open(file_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        msg = f"config file must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)

    return HarnessConfig(**data)


def _file_handler_name(log_file: str) -> str:
    return f"procharness.file:{Path(log_file).resolve()}"


def configure_logging(config: HarnessConfig) -> logging.Logger:
    """Attach handlers to the ``procharness`` logger and set its level.

    Handlers are named, one console handler plus one per log file, so calling
    this again with the same config adds nothing. A new ``log_file`` adds a
    handler next to the existing ones.

    Returns:
        The ``procharness`` logger.
    """
    harness_logger = logging.getLogger("procharness")
    harness_logger.setLevel(config.log_level)
    present = {h.get_name() for h in harness_logger.handlers}

    wanted: list[tuple[str, Callable[[], logging.Handler]]] = [
        (_CONSOLE_HANDLER, logging.StreamHandler)
    ]
    if config.log_file is not None:
        log_file = config.log_file
        wanted.append(
            (
                _file_handler_name(log_file),
                lambda: logging.FileHandler(log_file, encoding="utf-8"),
            )
        )

    for name, make_handler in wanted:
        if name in present:
            continue
        handler = make_handler()
        handler.set_name(name)
        handler.setFormatter(logging.Formatter(config.log_format))
        harness_logger.addHandler(handler)
    return harness_logger
