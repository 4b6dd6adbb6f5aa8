from .errors import CodeRejected, ErrorKind, InfrastructureError, SandboxError, kind_of
from .history import HistoryEntry, HistorySink, InMemoryHistorySink
from .policy import ExecutionOptions, SandboxPolicy
from .result import ExecutionResult
from .runner import Sandbox, submit, validate
from .validation import ValidationOutcome, Violation

__all__ = [
    "CodeRejected",
    "ErrorKind",
    "ExecutionOptions",
    "ExecutionResult",
    "HistoryEntry",
    "HistorySink",
    "InMemoryHistorySink",
    "InfrastructureError",
    "Sandbox",
    "SandboxError",
    "SandboxPolicy",
    "ValidationOutcome",
    "Violation",
    "kind_of",
    "submit",
    "validate",
]
