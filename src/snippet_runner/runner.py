from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from types import TracebackType
from typing import Any, Mapping

from .errors import CodeRejected
from .execution.driver import run
from .execution.isolate import create_isolate
from .execution.types import ExecutionRequest
from .history import HistoryEntry, HistorySink
from .policy import ExecutionOptions, SandboxPolicy
from .result import ExecutionResult, assemble
from .validation import ValidationOutcome, validate as validate_source

logger = logging.getLogger(__name__)


def _resolve_policy(policy: SandboxPolicy | None, policy_file: str | None) -> SandboxPolicy:
    """Resolve the effective policy object for a sandbox.

    Example:
        ```python
        policy = _resolve_policy(None, "/tmp/policy.toml")
        ```
    """
    if policy is not None and policy_file is not None:
        raise ValueError("Provide either 'policy' or 'policy_file', not both")
    if policy is None and policy_file is not None:
        return SandboxPolicy.from_file(policy_file)
    if policy is None:
        return SandboxPolicy()
    if policy.config_path is not None:
        return SandboxPolicy.from_file(policy.config_path)
    return policy


class Sandbox:
    """Validate, isolate, run and report untrusted Python snippets.

    Every `submit` gets its own isolate, so one `Sandbox` can serve
    concurrent callers. History writes happen on a background thread and
    never change a result.

    Example:
        ```python
        with Sandbox() as sandbox:
            result = sandbox.submit("print('Hello, World!')")
        ```
    """

    def __init__(
        self,
        policy: SandboxPolicy | None = None,
        policy_file: str | None = None,
        history_sink: HistorySink | None = None,
    ) -> None:
        """Create a sandbox from a policy object or policy file.

        Example:
            ```python
            sandbox = Sandbox(policy=SandboxPolicy(deadline_ms=2000))
            ```
        """
        self.policy = _resolve_policy(policy, policy_file)
        self.history_sink = history_sink
        self._history_executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()

    def validate(self, source: Any) -> ValidationOutcome:
        """Screen source against this sandbox's size limit and denylist.

        Example:
            ```python
            outcome = sandbox.validate("import os")
            ```
        """
        return validate_source(source, max_chars=self.policy.max_source_chars)

    def submit(
        self,
        source: str,
        options: ExecutionOptions | Mapping[str, Any] | None = None,
        *,
        user_id: Any = None,
        snippet_id: Any = None,
        skip_validation: bool = False,
    ) -> ExecutionResult:
        """Run one snippet and return its result.

        Raises `CodeRejected` when validation fails and `InfrastructureError`
        when no isolate could be built; guest failures come back inside the
        result instead.

        Example:
            ```python
            result = sandbox.submit("2 + 2", {"deadlineMs": 1000})
            assert result.output == "4"
            ```
        """
        if not isinstance(source, str):
            raise TypeError("source must be a string")
        request = ExecutionRequest(source=source)
        deadline_ms, memory_limit_mb = ExecutionOptions.coerce(options).resolve(self.policy)

        started = time.perf_counter()
        if not skip_validation:
            validation = self.validate(request.source)
            if not validation.valid:
                raise CodeRejected(validation)

        with create_isolate(memory_limit_mb, allowed_imports=self.policy.allowed_imports) as isolate:
            outcome = run(
                isolate,
                request.source,
                deadline_ms,
                max_output_kb=self.policy.max_output_kb,
            )
        elapsed_ms = (time.perf_counter() - started) * 1000

        result = assemble(
            outcome,
            elapsed_ms,
            deadline_ms=deadline_ms,
            memory_limit_mb=memory_limit_mb,
        )
        self._dispatch_history(request, result, user_id, snippet_id)
        return result

    def _dispatch_history(
        self,
        request: ExecutionRequest,
        result: ExecutionResult,
        user_id: Any,
        snippet_id: Any,
    ) -> None:
        """Queue a history write without waiting for it.

        Example:
            ```python
            sandbox._dispatch_history(request, result, user_id=1, snippet_id=None)
            ```
        """
        if self.history_sink is None:
            return
        entry = HistoryEntry(
            user_id=user_id,
            snippet_id=snippet_id,
            code=request.source,
            output=result.output,
            error=result.error,
            execution_time_ms=result.execution_time_ms,
        )
        with self._lock:
            if self._history_executor is None:
                self._history_executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="snippet-history"
                )
            self._history_executor.submit(self._write_history, entry)

    def _write_history(self, entry: HistoryEntry) -> None:
        """Hand an entry to the sink, logging rather than raising on failure.

        Example:
            ```python
            sandbox._write_history(entry)
            ```
        """
        if self.history_sink is None:
            return
        try:
            self.history_sink.record(entry)
        except Exception:
            logger.exception("Failed to record execution history")

    def close(self) -> None:
        """Wait for queued history writes and stop the writer thread.

        Example:
            ```python
            sandbox.close()
            ```
        """
        with self._lock:
            executor, self._history_executor = self._history_executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def __enter__(self) -> "Sandbox":
        """Return the sandbox for use inside a `with` block.

        Example:
            ```python
            with Sandbox() as sandbox:
                ...
            ```
        """
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Drain history writes on exit.

        Example:
            ```python
            sandbox.__exit__(None, None, None)
            ```
        """
        self.close()


_DEFAULT_SANDBOX: Sandbox | None = None
_DEFAULT_LOCK = threading.Lock()


def _default_sandbox() -> Sandbox:
    """Return the lazily created module-level sandbox.

    Example:
        ```python
        sandbox = _default_sandbox()
        ```
    """
    global _DEFAULT_SANDBOX
    with _DEFAULT_LOCK:
        if _DEFAULT_SANDBOX is None:
            _DEFAULT_SANDBOX = Sandbox()
        return _DEFAULT_SANDBOX


def submit(
    source: str,
    options: ExecutionOptions | Mapping[str, Any] | None = None,
) -> ExecutionResult:
    """Run one snippet with the default policy (5000 ms / 128 MB).

    Example:
        ```python
        from snippet_runner import submit
        result = submit("print('Hello, World!')")
        ```
    """
    return _default_sandbox().submit(source, options)


def validate(source: Any) -> ValidationOutcome:
    """Screen source with the default policy before calling `submit`.

    Example:
        ```python
        from snippet_runner import validate
        outcome = validate("while True:\\n    pass")
        ```
    """
    return _default_sandbox().validate(source)
