import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from snippet_runner import InfrastructureError, Sandbox, SandboxPolicy
from snippet_runner import runner as runner_module
from snippet_runner.execution import isolate as isolate_module
from snippet_runner.execution import create_isolate, run
from snippet_runner.execution.types import RawFailure, RunOutcome


def test_dispose_is_idempotent() -> None:
    isolate = create_isolate(128)
    scratch = isolate.scratch_path
    assert scratch.exists()

    isolate.dispose()
    isolate.dispose()

    assert isolate.disposed is True
    assert isolate.returncode is not None
    assert not scratch.exists()


def test_context_manager_disposes_after_success() -> None:
    with create_isolate(128) as isolate:
        outcome = run(isolate, "print('ok')", 5000)
    assert isinstance(outcome, RunOutcome)
    assert isolate.disposed is True
    isolate.dispose()


def test_context_manager_disposes_after_failure() -> None:
    with create_isolate(128) as isolate:
        outcome = run(isolate, "missing_name", 5000)
    assert isinstance(outcome, RawFailure)
    assert isolate.disposed is True
    isolate.dispose()


def test_context_manager_disposes_when_host_raises() -> None:
    with pytest.raises(RuntimeError):
        with create_isolate(128) as isolate:
            raise RuntimeError("host side failure")
    assert isolate.disposed is True
    assert isolate.returncode is not None


def test_isolate_runs_only_once() -> None:
    with create_isolate(128) as isolate:
        run(isolate, "1", 5000)
        with pytest.raises(InfrastructureError):
            run(isolate, "2", 5000)
    with pytest.raises(InfrastructureError, match="disposed"):
        run(isolate, "3", 5000)


def test_spawn_failure_is_infrastructure_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def _refuse(*args, **kwargs):
        raise OSError("no processes left")

    monkeypatch.setattr(isolate_module.subprocess, "Popen", _refuse)
    with pytest.raises(InfrastructureError, match="Could not start isolate"):
        create_isolate(128)


def test_sequential_failures_leave_nothing_behind(monkeypatch: pytest.MonkeyPatch) -> None:
    created = []

    def _tracking_create(*args, **kwargs):
        isolate = create_isolate(*args, **kwargs)
        created.append(isolate)
        return isolate

    monkeypatch.setattr(runner_module, "create_isolate", _tracking_create)
    sandbox = Sandbox()
    for index in range(8):
        result = sandbox.submit(f"raise ValueError('failure {index}')")
        assert result.has_error is True

    assert len(created) == 8
    for isolate in created:
        assert isolate.disposed is True
        assert isolate.returncode is not None
        assert not isolate.scratch_path.exists()
    assert len({isolate.pid for isolate in created}) == 8


def _open_fd_count() -> int:
    return len(os.listdir("/proc/self/fd"))


def _resident_bytes() -> int:
    with open("/proc/self/statm", encoding="ascii") as handle:
        return int(handle.read().split()[1]) * os.sysconf("SC_PAGE_SIZE")


@pytest.mark.skipif(not Path("/proc/self/fd").is_dir(), reason="needs /proc")
def test_repeated_failures_keep_host_resources_steady() -> None:
    failing = [
        "raise ValueError('boom')",
        "raise KeyboardInterrupt('stop')",
        "def broken(:",
        "missing_name",
    ]
    sandbox = Sandbox()
    for source in failing:
        assert sandbox.submit(source).has_error is True
    fds_before = _open_fd_count()
    rss_before = _resident_bytes()

    for _ in range(5):
        for source in failing:
            assert sandbox.submit(source).has_error is True

    assert _open_fd_count() == fds_before
    assert _resident_bytes() - rss_before < 16 * 1024 * 1024


def test_timeout_path_disposes(monkeypatch: pytest.MonkeyPatch) -> None:
    created = []

    def _tracking_create(*args, **kwargs):
        isolate = create_isolate(*args, **kwargs)
        created.append(isolate)
        return isolate

    monkeypatch.setattr(runner_module, "create_isolate", _tracking_create)
    result = Sandbox(policy=SandboxPolicy(deadline_ms=500)).submit(
        "while True:\n    pass", skip_validation=True
    )
    assert result.has_error is True
    assert created[0].disposed is True
    assert created[0].returncode is not None


def test_concurrent_submissions_do_not_share_state() -> None:
    sandbox = Sandbox()
    writer = "secret = 'alpha'\nprint(secret)"
    reader = "try:\n    print(secret)\nexcept NameError:\n    print('isolated')"

    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = [pool.submit(sandbox.submit, writer if i % 2 == 0 else reader) for i in range(6)]
        results = [future.result() for future in futures]

    for index, result in enumerate(results):
        assert result.has_error is False
        assert result.output == ("alpha" if index % 2 == 0 else "isolated")
