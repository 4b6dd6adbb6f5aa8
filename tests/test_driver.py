import json
import subprocess
from types import SimpleNamespace

import pytest

from snippet_runner import InfrastructureError
from snippet_runner.execution import driver
from snippet_runner.execution.types import RawFailure, RunOutcome


class _FakeIsolate:
    def __init__(self, stdout: str = "", stderr: str = "", returncode: int = 0, hang: bool = False) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        self.hang = hang
        self.pid = 4242
        self.killed = False
        self.payload: dict | None = None

    def exchange(self, payload: str, timeout_seconds: float) -> tuple[str, str]:
        self.payload = json.loads(payload)
        if self.hang:
            raise subprocess.TimeoutExpired(cmd="worker", timeout=timeout_seconds)
        return self.stdout, self.stderr

    def kill(self) -> None:
        self.killed = True


def test_successful_report_becomes_outcome() -> None:
    isolate = _FakeIsolate(stdout=json.dumps({"ok": True, "lines": ["hi"], "value": None}))
    outcome = driver.run(isolate, "print('hi')", 5000, max_output_kb=4)  # type: ignore[arg-type]
    assert outcome == RunOutcome(captured_lines=["hi"], final_value=None)
    assert isolate.payload == {"source": "print('hi')", "deadline_ms": 5000, "max_output_kb": 4}


def test_failure_report_becomes_raw_failure() -> None:
    report = {"ok": False, "error": "NameError: name 'x' is not defined", "error_type": "NameError"}
    outcome = driver.run(_FakeIsolate(stdout=json.dumps(report)), "x", 5000)  # type: ignore[arg-type]
    assert outcome == RawFailure(
        message="NameError: name 'x' is not defined",
        exception_type="NameError",
    )


def test_deadline_kills_isolate() -> None:
    isolate = _FakeIsolate(hang=True)
    outcome = driver.run(isolate, "x = 1", 250)  # type: ignore[arg-type]
    assert isinstance(outcome, RawFailure)
    assert outcome.timed_out is True
    assert isolate.killed is True


def test_finishing_at_the_deadline_counts_as_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    ticks = iter([0.0, 1.0])
    monkeypatch.setattr(driver, "time", SimpleNamespace(monotonic=lambda: next(ticks)))
    isolate = _FakeIsolate(stdout=json.dumps({"ok": True, "lines": ["late"]}))
    outcome = driver.run(isolate, "print('late')", 1000)  # type: ignore[arg-type]
    assert isinstance(outcome, RawFailure)
    assert outcome.timed_out is True


def test_invalid_json_is_reported() -> None:
    outcome = driver.run(_FakeIsolate(stdout="not json"), "1", 5000)  # type: ignore[arg-type]
    assert outcome == RawFailure(message="Runner returned invalid JSON")


def test_signal_death_is_treated_as_memory_exhaustion() -> None:
    outcome = driver.run(_FakeIsolate(returncode=-9), "1", 5000)  # type: ignore[arg-type]
    assert isinstance(outcome, RawFailure)
    assert outcome.resource_exceeded is True
    assert "SIGKILL" in outcome.message


def test_cpu_limit_signal_is_a_timeout() -> None:
    outcome = driver.run(_FakeIsolate(returncode=-24), "1", 5000)  # type: ignore[arg-type]
    assert isinstance(outcome, RawFailure)
    assert outcome.timed_out is True


def test_interrupt_signal_is_not_memory_exhaustion() -> None:
    outcome = driver.run(_FakeIsolate(returncode=-2), "1", 5000)  # type: ignore[arg-type]
    assert isinstance(outcome, RawFailure)
    assert outcome.resource_exceeded is False
    assert outcome.timed_out is False
    assert outcome.message == "Isolate terminated by SIGINT"


def test_silent_exit_hides_worker_stderr() -> None:
    stderr = 'Traceback (most recent call last):\n  File "/srv/worker.py", line 9\nBoom: x\n'
    outcome = driver.run(_FakeIsolate(stderr=stderr, returncode=1), "1", 5000)  # type: ignore[arg-type]
    assert isinstance(outcome, RawFailure)
    assert outcome.message == "Isolate exited with status 1 without a report"
    assert "worker.py" not in outcome.message


def test_memory_error_on_last_stderr_line_is_memory_exhaustion() -> None:
    stderr = "Traceback (most recent call last):\nMemoryError\n"
    outcome = driver.run(_FakeIsolate(stderr=stderr, returncode=1), "1", 5000)  # type: ignore[arg-type]
    assert isinstance(outcome, RawFailure)
    assert outcome.resource_exceeded is True


def test_worker_setup_failure_is_infrastructure() -> None:
    report = {"ok": False, "infrastructure": True, "error": "RLIMIT_AS not applied: denied"}
    with pytest.raises(InfrastructureError, match="RLIMIT_AS"):
        driver.run(_FakeIsolate(stdout=json.dumps(report), returncode=3), "1", 5000)  # type: ignore[arg-type]
