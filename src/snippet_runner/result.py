from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import ErrorKind, classify
from .execution.types import RawFailure, RunOutcome


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Normalized execution result returned by `submit`.

    Example:
        ```python
        result = ExecutionResult(output="4", error="", execution_time_ms=12, has_error=False)
        ```
    """

    output: str
    error: str
    execution_time_ms: int
    has_error: bool
    error_kind: ErrorKind | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the wire shape the API layer and history store record.

        Example:
            ```python
            payload = result.to_dict()
            ```
        """
        return {
            "output": self.output,
            "error": self.error,
            "executionTimeMs": self.execution_time_ms,
            "hasError": self.has_error,
        }


def render_output(outcome: RunOutcome) -> str:
    """Prefer captured lines, then the final expression value.

    Example:
        ```python
        assert render_output(RunOutcome(final_value="4")) == "4"
        ```
    """
    if outcome.captured_lines:
        return "\n".join(outcome.captured_lines)
    if outcome.final_value is not None:
        return outcome.final_value
    return ""


def assemble(
    outcome: RunOutcome | RawFailure,
    elapsed_ms: float,
    *,
    deadline_ms: int,
    memory_limit_mb: int,
) -> ExecutionResult:
    """Build the single `ExecutionResult` for a finished request.

    Example:
        ```python
        result = assemble(RunOutcome(["hi"]), 3.2, deadline_ms=5000, memory_limit_mb=128)
        ```
    """
    kind: ErrorKind | None = None
    if isinstance(outcome, RawFailure):
        kind, error = classify(outcome, deadline_ms=deadline_ms, memory_limit_mb=memory_limit_mb)
        output = ""
    else:
        output, error = render_output(outcome), ""

    output = output.strip()
    error = error.strip()
    has_error = bool(error)
    return ExecutionResult(
        output=output,
        error=error,
        execution_time_ms=max(0, int(round(elapsed_ms))),
        has_error=has_error,
        error_kind=kind if has_error else None,
    )
