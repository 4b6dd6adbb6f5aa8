from __future__ import annotations

import enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .execution.types import RawFailure
    from .validation import ValidationOutcome


class SandboxError(Exception):
    """Base class for errors raised by snippet-runner itself.

    Example:
        ```python
        try:
            submit("print(1)")
        except SandboxError:
            ...
        ```
    """


class InfrastructureError(SandboxError, RuntimeError):
    """Raised when an isolate cannot be constructed or driven.

    Example:
        ```python
        raise InfrastructureError("Could not start isolate")
        ```
    """


class CodeRejected(SandboxError, ValueError):
    """Raised by `submit` when source fails static validation.

    Example:
        ```python
        try:
            submit("import os")
        except CodeRejected as exc:
            print(exc.errors)
        ```
    """

    def __init__(self, outcome: "ValidationOutcome") -> None:
        """Keep the validation outcome so callers can report every violation.

        Example:
            ```python
            raise CodeRejected(validate("import os"))
            ```
        """
        self.outcome = outcome
        super().__init__("Invalid code: " + "; ".join(outcome.errors))

    @property
    def errors(self) -> list[str]:
        """Return violation messages in detection order.

        Example:
            ```python
            messages = exc.errors
            ```
        """
        return list(self.outcome.errors)


class ErrorKind(enum.Enum):
    """Closed set of execution failure categories.

    Example:
        ```python
        assert kind_of(result.error) is ErrorKind.TIMEOUT
        ```
    """

    TIMEOUT = "timeout"
    MEMORY_EXCEEDED = "memory_exceeded"
    SYNTAX_ERROR = "syntax_error"
    REFERENCE_ERROR = "reference_error"
    TYPE_ERROR = "type_error"
    UNCLASSIFIED = "unclassified"


_EXCEPTION_KINDS = {
    "SyntaxError": ErrorKind.SYNTAX_ERROR,
    "IndentationError": ErrorKind.SYNTAX_ERROR,
    "TabError": ErrorKind.SYNTAX_ERROR,
    "NameError": ErrorKind.REFERENCE_ERROR,
    "UnboundLocalError": ErrorKind.REFERENCE_ERROR,
    "TypeError": ErrorKind.TYPE_ERROR,
    "MemoryError": ErrorKind.MEMORY_EXCEEDED,
}

# Ordered; first hit wins.
_MESSAGE_MARKERS: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("timeout", "timed out"), ErrorKind.TIMEOUT),
    (("memory",), ErrorKind.MEMORY_EXCEEDED),
    (("syntaxerror",), ErrorKind.SYNTAX_ERROR),
    (("nameerror", "referenceerror"), ErrorKind.REFERENCE_ERROR),
    (("typeerror",), ErrorKind.TYPE_ERROR),
)

_DISPLAY_PREFIXES = {
    ErrorKind.SYNTAX_ERROR: "Syntax Error",
    ErrorKind.REFERENCE_ERROR: "Reference Error",
    ErrorKind.TYPE_ERROR: "Type Error",
}


def _kind_from_message(message: str) -> ErrorKind:
    """Match a raw failure message against the ordered marker table.

    Example:
        ```python
        kind = _kind_from_message("Execution timeout after 5000ms")
        ```
    """
    lowered = message.lower()
    for markers, kind in _MESSAGE_MARKERS:
        if any(marker in lowered for marker in markers):
            return kind
    return ErrorKind.UNCLASSIFIED


def _format_seconds(deadline_ms: int) -> str:
    """Render a millisecond deadline as a compact seconds string.

    Example:
        ```python
        assert _format_seconds(1500) == "1.5"
        ```
    """
    return f"{deadline_ms / 1000:g}"


def classify(
    raw: "RawFailure",
    *,
    deadline_ms: int,
    memory_limit_mb: int,
) -> tuple[ErrorKind, str]:
    """Map a raw failure to an error kind and a user-facing message.

    Structured signals reported by the isolate win over text matching; the
    message is only scanned when the failure carries no exception type.

    Example:
        ```python
        kind, message = classify(raw, deadline_ms=5000, memory_limit_mb=128)
        ```
    """
    message = raw.message or "Execution error"
    if raw.timed_out:
        kind = ErrorKind.TIMEOUT
    elif raw.resource_exceeded:
        kind = ErrorKind.MEMORY_EXCEEDED
    elif raw.exception_type is not None:
        kind = _EXCEPTION_KINDS.get(raw.exception_type, ErrorKind.UNCLASSIFIED)
    else:
        kind = _kind_from_message(message)

    if kind is ErrorKind.TIMEOUT:
        return kind, f"Code execution timed out ({_format_seconds(deadline_ms)} seconds limit)"
    if kind is ErrorKind.MEMORY_EXCEEDED:
        return kind, f"Code execution exceeded memory limit ({memory_limit_mb}MB)"
    if kind in _DISPLAY_PREFIXES:
        return kind, f"{_DISPLAY_PREFIXES[kind]}: {message}"
    return kind, message


def kind_of(error_text: str) -> ErrorKind | None:
    """Derive the error kind back from a classified display message.

    Example:
        ```python
        assert kind_of("Type Error: TypeError: boom") is ErrorKind.TYPE_ERROR
        ```
    """
    text = error_text.strip()
    if not text:
        return None
    if text.startswith("Code execution timed out"):
        return ErrorKind.TIMEOUT
    if text.startswith("Code execution exceeded memory limit"):
        return ErrorKind.MEMORY_EXCEEDED
    for kind, prefix in _DISPLAY_PREFIXES.items():
        if text.startswith(f"{prefix}:"):
            return kind
    return ErrorKind.UNCLASSIFIED
