"""Test assertions built on the bounded runner.

Each helper runs a fresh interpreter through :func:`procharness.runner.execute`
and raises ``AssertionError`` with a descriptive message when the child
misbehaves. Keyword options not consumed by a helper are forwarded to
:meth:`procharness.config.HarnessConfig.build_invocation` (``env``,
``timeout_seconds``, ``process_group``, filters, ...). Pass ``config=`` to
use non-default harness settings and ``locator=`` to replace the
crash-report lookup.
"""

from __future__ import annotations

import base64
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
import logging
import pickle  # nosec B403
import re
from typing import Any
import warnings

from procharness.config import HarnessConfig
from procharness.context import (
    HarnessContext,
    capture_warnings,
    interpreter_flags,
    warning_scope,
)
from procharness.diagnostics import CrashReportLocator, default_locator
from procharness.failure import describe_failure, locate_crash_report
from procharness.models import CaptureMode, ExecutionOutcome, ExitStatus, Invocation
from procharness.runner import caller_label, execute

logger = logging.getLogger(__name__)

ABORT_SIGNALS = frozenset({"ILL", "ABRT", "BUS", "SEGV"})

Expected = Sequence[str] | re.Pattern[str]


class _AnySequence:
    """Wildcard for :func:`assert_pattern_list`."""

    def __repr__(self) -> str:
        return "ANY"


ANY = _AnySequence()


def _run(
    args: Sequence[str],
    stdin: str | bytes,
    capture: CaptureMode,
    *,
    locator: CrashReportLocator | None = None,
    config: HarnessConfig | None = None,
    **options: Any,
) -> tuple[Invocation, ExecutionOutcome]:
    options.setdefault("label", caller_label(2))
    invocation = (config or HarnessConfig()).build_invocation(
        *args, stdin_data=stdin, capture=capture, **options
    )
    logger.debug("Running %s for %s", invocation.argv, invocation.label)
    return invocation, execute(invocation, locator=locator)


def _crash_report(
    invocation: Invocation,
    outcome: ExecutionOutcome,
    locator: CrashReportLocator | None,
) -> str | None:
    return locate_crash_report(
        outcome.status,
        invocation.executable,
        locator or default_locator(),
        outcome.started_at,
    )


def _with_message(message: str | None, text: str) -> str:
    return f"{message}\n{text}" if message else text


# ---------------------------------------------------------------------------
# Output and exit-status assertions
# ---------------------------------------------------------------------------


def _check_stream(expected: Expected, actual: str, message: str | None) -> None:
    if isinstance(expected, re.Pattern):
        if not expected.search(actual):
            msg = _with_message(message, f"Expected {expected.pattern!r} to match {actual!r}")
            raise AssertionError(msg)
        return
    lines = actual.splitlines()
    if list(expected) != lines:
        msg = _with_message(message, f"Expected {list(expected)!r}, got {lines!r}")
        raise AssertionError(msg)


def assert_in_out_err(
    args: Sequence[str],
    stdin: str | bytes = "",
    expected_stdout: Expected = (),
    expected_stderr: Expected = (),
    message: str | None = None,
    *,
    locator: CrashReportLocator | None = None,
    **options: Any,
) -> ExitStatus:
    """Run the interpreter and check both output streams.

    Expected values are either sequences of lines (compared against the
    output split into lines) or compiled regular expressions (searched in
    the output). Both streams are always checked; all mismatches are
    reported together, separated by ``---``.

    Args:
        args: Interpreter arguments.
        stdin: Input written to the child.
        expected_stdout: Expected stdout lines or pattern.
        expected_stderr: Expected stderr lines or pattern.
        message: Prefix for the first mismatch.
        locator: Crash-report collaborator.
        **options: Forwarded to ``HarnessConfig.build_invocation``.

    Returns:
        The child's exit status.

    Raises:
        AssertionError: If either stream does not match.
    """
    invocation, outcome = _run(
        args, stdin, CaptureMode.BOTH, locator=locator, **options
    )
    if outcome.status.signaled:
        # Consume the crash report so it does not leak into later runs.
        _crash_report(invocation, outcome, locator)

    errors: list[str] = []
    for expected, actual in (
        (expected_stdout, outcome.stdout_text),
        (expected_stderr, outcome.stderr_text),
    ):
        try:
            _check_stream(expected, actual, message)
        except AssertionError as exc:
            errors.append(str(exc))
            message = None
    if errors:
        raise AssertionError("\n---\n".join(errors))
    return outcome.status


def assert_normal_exit(
    source: str,
    message: str = "",
    *,
    child_env: dict[str, str] | None = None,
    locator: CrashReportLocator | None = None,
    **options: Any,
) -> ExitStatus:
    """Run *source* with warnings silenced; fail if it died from a signal."""
    assert_valid_syntax(source, caller_label())
    if child_env:
        options["env"] = {**options.get("env", {}), **child_env}
    flags = interpreter_flags(HarnessContext(verbose=None))
    invocation, outcome = _run(
        [*flags, "-"], source, CaptureMode.MERGED, locator=locator, **options
    )
    if outcome.status.signaled:
        raise AssertionError(
            describe_failure(
                outcome.status,
                message,
                outcome.stdout_text,
                _crash_report(invocation, outcome, locator),
            )
        )
    return outcome.status


def assert_interpreter_status(
    args: Sequence[str],
    stdin: str | bytes = "",
    message: str | None = None,
    *,
    locator: CrashReportLocator | None = None,
    **options: Any,
) -> ExitStatus:
    """Fail unless the child exits normally with status 0."""
    invocation, outcome = _run(
        args, stdin, CaptureMode.MERGED, locator=locator, **options
    )
    if outcome.status.signaled:
        raise AssertionError(
            describe_failure(
                outcome.status,
                message or "",
                outcome.stdout_text,
                _crash_report(invocation, outcome, locator),
            )
        )
    if not outcome.status.success:
        prefix = message or "interpreter exit status is not success:"
        msg = f"{prefix} ({outcome.status})"
        raise AssertionError(msg)
    return outcome.status


# ---------------------------------------------------------------------------
# Running a test body in a separate interpreter
# ---------------------------------------------------------------------------

_RESULT_MARKER = "@@procharness-result@@"

# The child reports (exception or None, formatted traceback) as a pickled,
# base64-encoded line after everything the body printed.
_SEPARATELY_TEMPLATE = """\
import base64 as _b64, pickle as _pickle, sys as _sys, traceback as _tb
_error = None
_trace = ""
try:
    exec(compile({source!r}, {filename!r}, "exec"), {{"__name__": "__main__"}})
except SystemExit as _exc:
    if _exc.code not in (None, 0):
        _error, _trace = AssertionError(f"exit({{_exc.code!r}}) called"), _tb.format_exc()
except BaseException as _exc:
    _error, _trace = _exc, _tb.format_exc()
try:
    _payload = _pickle.dumps((_error, _trace))
except Exception:
    _payload = _pickle.dumps((AssertionError(repr(_error)), _trace))
_sys.stdout.flush()
_sys.stdout.write("\\n{marker}" + _b64.b64encode(_payload).decode("ascii") + "\\n")
"""


def _extract_result(stdout: str) -> tuple[BaseException | None, str] | None:
    """Find and decode the result line written by the child, if any."""
    for line in reversed(stdout.splitlines()):
        if line.startswith(_RESULT_MARKER):
            payload = base64.b64decode(line[len(_RESULT_MARKER) :])
            try:
                return pickle.loads(payload)  # nosec B301
            except (pickle.UnpicklingError, AttributeError, ImportError) as exc:
                return AssertionError(f"child exception could not be loaded: {exc}"), ""
    return None


def assert_separately(
    source: str,
    *,
    filename: str = "<separately>",
    ignore_stderr: bool = False,
    locator: CrashReportLocator | None = None,
    **options: Any,
) -> ExitStatus:
    """Run *source* in a fresh interpreter and re-raise whatever it raised.

    The child must not write to stderr (unless *ignore_stderr*) and must
    exit with status 0. A child killed by an abort-class signal, or one that
    dumped core, fails with a description of the signal and its stderr.

    Raises:
        AssertionError: If the child crashed, wrote to stderr, exited with
            a non-zero status, or never reported a result.
        Exception: Whatever exception *source* raised in the child.
    """
    wrapper = _SEPARATELY_TEMPLATE.format(
        source=source, filename=filename, marker=_RESULT_MARKER
    )
    invocation, outcome = _run(
        [*interpreter_flags(), "-"], wrapper, CaptureMode.BOTH, locator=locator, **options
    )
    status = outcome.status
    if status.core_dumped or (status.signaled and status.signal_name in ABORT_SIGNALS):
        raise AssertionError(
            describe_failure(
                status,
                "",
                outcome.stderr_text,
                _crash_report(invocation, outcome, locator),
            )
        )

    result = _extract_result(outcome.stdout_text)
    if result is None:
        ignore_stderr = False
    else:
        error, trace = result
        if error is not None:
            if trace:
                error.add_note(f"raised in child process:\n{trace}")
            raise error

    if not ignore_stderr and outcome.stderr:
        msg = f"assert_separately failed with error message\n{outcome.stderr_text}"
        raise AssertionError(msg)
    if not status.success:
        msg = f"assert_separately failed: {status}: {outcome.stderr_text!r}"
        raise AssertionError(msg)
    if result is None:
        msg = "assert_separately: child reported no result"
        raise AssertionError(msg)
    return status


# ---------------------------------------------------------------------------
# In-process assertions
# ---------------------------------------------------------------------------


def assert_valid_syntax(
    code: str,
    filename: str = "<string>",
    message: str | None = None,
    *,
    verbose: bool | None = None,
) -> None:
    """Fail if *code* does not compile. Nothing is executed."""
    with warning_scope(verbose):
        try:
            compile(code, filename, "exec", dont_inherit=True)
        except SyntaxError as exc:
            msg = f"{message or filename}: {exc}"
            raise AssertionError(msg) from exc


def assert_syntax_error(
    code: str,
    error: str | re.Pattern[str],
    filename: str = "<string>",
    message: str | None = None,
) -> SyntaxError:
    """Fail unless compiling *code* raises a ``SyntaxError`` matching *error*.

    Returns:
        The ``SyntaxError`` that was raised.
    """
    pattern = re.compile(error) if isinstance(error, str) else error
    with warning_scope(None):
        try:
            compile(code, filename, "exec", dont_inherit=True)
        except SyntaxError as exc:
            if not pattern.search(exc.msg or ""):
                msg = f"{message or filename}: expected {pattern.pattern!r} to match {exc.msg!r}"
                raise AssertionError(msg) from exc
            return exc
    msg = f"{message or filename}: expected SyntaxError"
    raise AssertionError(msg)


def assert_pattern_list(
    patterns: Sequence[str | re.Pattern[str] | _AnySequence],
    actual: str,
    message: str | None = None,
) -> None:
    """Match *actual* against an anchored sequence of regular expressions.

    Each pattern must match immediately after the previous one, unless
    separated by :data:`ANY`, which skips any text. The whole of *actual*
    must be consumed unless the list ends with ``ANY``.
    """
    rest = actual
    anchored = True
    for i, item in enumerate(patterns):
        if isinstance(item, _AnySequence):
            anchored = False
            continue
        regex = re.compile(item) if isinstance(item, str) else item
        match = regex.match(rest) if anchored else regex.search(rest)
        if match is None:
            msg = _with_message(
                message,
                f"Expected {regex.pattern!r}\nto match {rest!r}\n"
                f"after {i} patterns with {len(actual) - len(rest)} characters",
            )
            raise AssertionError(msg)
        rest = rest[match.end() :]
        anchored = True
    if anchored and rest:
        raise AssertionError(_with_message(message, f"Unmatched trailing text {rest!r}"))


@contextmanager
def assert_warning(
    pattern: str | re.Pattern[str],
    message: str | None = None,
) -> Iterator[list[warnings.WarningMessage]]:
    """Fail unless the block emits a warning whose text matches *pattern*."""
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    with capture_warnings() as caught:
        yield caught
    text = "\n".join(str(w.message) for w in caught)
    if not regex.search(text):
        msg = _with_message(
            message, f"Expected warning matching {regex.pattern!r}, got {text!r}"
        )
        raise AssertionError(msg)
