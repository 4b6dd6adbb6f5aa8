from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    """Return an aware UTC timestamp.

    Example:
        ```python
        stamp = _utcnow()
        ```
    """
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Immutable input for one submission.

    Example:
        ```python
        req = ExecutionRequest(source="print(1 + 1)")
        ```
    """

    source: str
    requested_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class RunOutcome:
    """What a successful run left behind in the isolate.

    Example:
        ```python
        out = RunOutcome(captured_lines=["Hello"], final_value=None)
        ```
    """

    captured_lines: list[str] = field(default_factory=list)
    final_value: str | None = None
    limit_warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RawFailure:
    """Unclassified failure reported by, or about, an isolate.

    Example:
        ```python
        failure = RawFailure(message="NameError: name 'x' is not defined", exception_type="NameError")
        ```
    """

    message: str
    exception_type: str | None = None
    timed_out: bool = False
    resource_exceeded: bool = False
