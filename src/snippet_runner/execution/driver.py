from __future__ import annotations

import json
import logging
import signal
import subprocess
import time
from typing import Any

from ..errors import InfrastructureError
from .isolate import Isolate
from .types import RawFailure, RunOutcome

logger = logging.getLogger(__name__)

# Signals an exhausted address space ends in.
_MEMORY_SIGNALS = frozenset({signal.SIGKILL, signal.SIGSEGV})


def _build_payload(source: str, deadline_ms: int, max_output_kb: int) -> str:
    """Serialize the worker payload for one run.

    Example:
        ```python
        payload = _build_payload("print(1)", 5000, 128)
        ```
    """
    return json.dumps(
        {
            "source": source,
            "deadline_ms": int(deadline_ms),
            "max_output_kb": int(max_output_kb),
        }
    )


def _signal_name(signum: int) -> str:
    """Return a readable name for a signal number.

    Example:
        ```python
        assert _signal_name(9) == "SIGKILL"
        ```
    """
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


def _failure_from_exit(returncode: int, stderr: str) -> RawFailure:
    """Describe a worker that exited without a usable report.

    Worker stderr is logged, never shown to the caller.

    Example:
        ```python
        failure = _failure_from_exit(-9, "")
        ```
    """
    detail = stderr.strip()
    if detail:
        logger.debug("Isolate exited with status %s; stderr: %s", returncode, detail)
    if returncode < 0:
        signum = -returncode
        if signum == getattr(signal, "SIGXCPU", None):
            return RawFailure(message="CPU time limit reached (timeout)", timed_out=True)
        if signum in _MEMORY_SIGNALS:
            return RawFailure(
                message=(
                    f"Isolate terminated by {_signal_name(signum)}; "
                    "memory limit was likely exceeded"
                ),
                resource_exceeded=True,
            )
        return RawFailure(
            message=f"Isolate terminated by {_signal_name(signum)}",
            exception_type="IsolateExit",
        )
    last_line = detail.splitlines()[-1] if detail else ""
    if last_line.startswith("MemoryError"):
        return RawFailure(message="Memory limit exceeded", resource_exceeded=True)
    return RawFailure(
        message=f"Isolate exited with status {returncode} without a report",
        exception_type="IsolateExit",
    )


def _parse_report(stdout: str, stderr: str, returncode: int) -> RunOutcome | RawFailure:
    """Turn the worker's JSON report into a run outcome.

    Example:
        ```python
        outcome = _parse_report('{"ok": true, "lines": ["4"]}', "", 0)
        ```
    """
    raw = stdout.strip()
    if not raw:
        return _failure_from_exit(returncode, stderr)
    try:
        report: Any = json.loads(raw)
    except json.JSONDecodeError:
        return RawFailure(message="Runner returned invalid JSON")
    if not isinstance(report, dict):
        return RawFailure(message="Runner returned invalid JSON")

    if report.get("infrastructure"):
        raise InfrastructureError(str(report.get("error") or "Isolate could not be prepared"))

    warnings = [str(item) for item in report.get("limit_warnings") or []]
    for warning in warnings:
        logger.warning("Isolate limit not applied: %s", warning)

    if report.get("ok"):
        value = report.get("value")
        return RunOutcome(
            captured_lines=[str(line) for line in report.get("lines") or []],
            final_value=None if value is None else str(value),
            limit_warnings=warnings,
        )
    return RawFailure(
        message=str(report.get("error") or "Execution error"),
        exception_type=report.get("error_type"),
        resource_exceeded=bool(report.get("resource_exceeded", False)),
    )


def run(
    isolate: Isolate,
    source: str,
    deadline_ms: int,
    *,
    max_output_kb: int = 128,
) -> RunOutcome | RawFailure:
    """Run source inside an isolate under a hard wall-clock deadline.

    The deadline is enforced from the host: when it passes, the worker
    process is killed, whatever the guest code is doing. A run that only
    finishes at or after the deadline still counts as a timeout.

    Example:
        ```python
        with create_isolate(128) as isolate:
            outcome = run(isolate, "2 + 2", deadline_ms=5000)
        ```
    """
    payload = _build_payload(source, deadline_ms, max_output_kb)
    started = time.monotonic()
    try:
        stdout, stderr = isolate.exchange(payload, timeout_seconds=deadline_ms / 1000)
    except subprocess.TimeoutExpired:
        isolate.kill()
        logger.warning("Isolate pid=%s killed after %sms deadline", isolate.pid, deadline_ms)
        return RawFailure(message=f"Execution timeout after {deadline_ms}ms", timed_out=True)
    elapsed_ms = (time.monotonic() - started) * 1000
    if elapsed_ms >= deadline_ms:
        return RawFailure(message=f"Execution timeout after {deadline_ms}ms", timed_out=True)
    return _parse_report(stdout, stderr, isolate.returncode or 0)
