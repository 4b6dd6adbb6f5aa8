from .driver import run
from .isolate import Isolate, create_isolate
from .types import ExecutionRequest, RawFailure, RunOutcome

__all__ = [
    "ExecutionRequest",
    "Isolate",
    "RawFailure",
    "RunOutcome",
    "create_isolate",
    "run",
]
