from __future__ import annotations

import logging
import subprocess
import sys
import tempfile
from pathlib import Path
from types import TracebackType
from typing import Iterable

from ..errors import InfrastructureError
from .capabilities import preflight_validate_isolation

logger = logging.getLogger(__name__)


def _worker_path() -> Path:
    """Return the absolute path to the worker module file.

    Example:
        ```python
        path = _worker_path()
        ```
    """
    return Path(__file__).resolve().parents[1] / "worker.py"


def _isolate_env() -> dict[str, str]:
    """Return the minimal environment handed to a worker interpreter.

    Example:
        ```python
        env = _isolate_env()
        ```
    """
    return {"LANG": "C", "LC_ALL": "C"}


def _worker_command(memory_limit_mb: int, allowed_imports: Iterable[str]) -> list[str]:
    """Build the interpreter command line for one isolate.

    `-I` drops environment and user-site influence, `-S` skips `site`.

    Example:
        ```python
        cmd = _worker_command(128, ["math"])
        ```
    """
    return [
        sys.executable,
        "-I",
        "-S",
        "-B",
        "-X",
        "utf8",
        str(_worker_path()),
        "--memory-limit-mb",
        str(int(memory_limit_mb)),
        "--allowed-imports",
        ",".join(sorted(set(allowed_imports))),
    ]


class Isolate:
    """One disposable worker interpreter with its own memory ceiling.

    Created by `create_isolate`, used for exactly one run, then disposed.
    Use it as a context manager so every exit path releases it.

    Example:
        ```python
        with create_isolate(128) as isolate:
            outcome = run(isolate, "print(1)", deadline_ms=5000)
        ```
    """

    def __init__(
        self,
        process: subprocess.Popen[str],
        scratch_dir: tempfile.TemporaryDirectory[str],
        memory_limit_mb: int,
    ) -> None:
        """Wrap a spawned worker process and its scratch directory.

        Example:
            ```python
            isolate = Isolate(process, scratch_dir, 128)
            ```
        """
        self._process = process
        self._scratch_dir = scratch_dir
        self._used = False
        self._disposed = False
        self.memory_limit_mb = memory_limit_mb

    @property
    def pid(self) -> int:
        """Return the worker process id.

        Example:
            ```python
            pid = isolate.pid
            ```
        """
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        """Return the worker exit status, `None` while it runs.

        Example:
            ```python
            status = isolate.returncode
            ```
        """
        return self._process.returncode

    @property
    def scratch_path(self) -> Path:
        """Return the private working directory of the worker.

        Example:
            ```python
            path = isolate.scratch_path
            ```
        """
        return Path(self._scratch_dir.name)

    @property
    def disposed(self) -> bool:
        """Return whether `dispose` has run.

        Example:
            ```python
            assert isolate.disposed
            ```
        """
        return self._disposed

    def exchange(self, payload: str, timeout_seconds: float) -> tuple[str, str]:
        """Send the run payload and wait for the worker report.

        Raises `subprocess.TimeoutExpired` when the deadline passes; the
        caller is expected to `kill` the isolate in that case.

        Example:
            ```python
            stdout, stderr = isolate.exchange('{"source": "1"}', timeout_seconds=5)
            ```
        """
        if self._disposed:
            raise InfrastructureError("Isolate has already been disposed")
        if self._used:
            raise InfrastructureError("Isolate has already run a snippet")
        self._used = True
        return self._process.communicate(input=payload, timeout=timeout_seconds)

    def kill(self) -> None:
        """Terminate the worker unconditionally and reap it.

        Example:
            ```python
            isolate.kill()
            ```
        """
        if self._process.poll() is None:
            self._process.kill()
        self._process.wait()

    def dispose(self) -> None:
        """Kill the worker if needed and release every resource; idempotent.

        Example:
            ```python
            isolate.dispose()
            isolate.dispose()
            ```
        """
        if self._disposed:
            return
        self._disposed = True
        try:
            self.kill()
        finally:
            for stream in (self._process.stdin, self._process.stdout, self._process.stderr):
                if stream is not None and not stream.closed:
                    stream.close()
            self._scratch_dir.cleanup()
            logger.debug("Disposed isolate pid=%s returncode=%s", self.pid, self.returncode)

    def __enter__(self) -> "Isolate":
        """Return the isolate for use inside a `with` block.

        Example:
            ```python
            with create_isolate(128) as isolate:
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
        """Dispose on every exit path.

        Example:
            ```python
            isolate.__exit__(None, None, None)
            ```
        """
        self.dispose()


def create_isolate(memory_limit_mb: int, *, allowed_imports: Iterable[str] = ()) -> Isolate:
    """Spawn a fresh worker interpreter bounded at `memory_limit_mb`.

    Example:
        ```python
        isolate = create_isolate(128, allowed_imports=["math"])
        ```
    """
    if int(memory_limit_mb) <= 0:
        raise ValueError("memory_limit_mb must be positive")
    preflight_validate_isolation()
    scratch_dir = tempfile.TemporaryDirectory(prefix="snippet-runner-")
    try:
        process = subprocess.Popen(
            _worker_command(memory_limit_mb, allowed_imports),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=scratch_dir.name,
            env=_isolate_env(),
            close_fds=True,
            start_new_session=True,
        )
    except OSError as exc:
        scratch_dir.cleanup()
        raise InfrastructureError(f"Could not start isolate: {exc}") from exc
    logger.debug("Created isolate pid=%s memory_limit_mb=%s", process.pid, memory_limit_mb)
    return Isolate(process, scratch_dir, int(memory_limit_mb))
