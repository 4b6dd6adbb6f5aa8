import io
import json
from pathlib import Path

import pytest

from snr import cli


def test_cli_run_inline_json(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["run", "-c", "2 + 2", "--json"])
    payload = json.loads(capsys.readouterr().out)
    assert code == cli.EXIT_OK
    assert payload["output"] == "4"
    assert payload["hasError"] is False
    assert set(payload) == {"output", "error", "executionTimeMs", "hasError"}


def test_cli_run_file_panel(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    snippet = tmp_path / "hello.py"
    snippet.write_text("print('Hello, World!')\n", encoding="utf-8")
    code = cli.main(["run", str(snippet)])
    output = capsys.readouterr().out
    assert code == cli.EXIT_OK
    assert "Hello, World!" in output


def test_cli_run_from_stdin(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("print('piped')"))
    code = cli.main(["run", "--json"])
    assert code == cli.EXIT_OK
    assert json.loads(capsys.readouterr().out)["output"] == "piped"


def test_cli_run_execution_error(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["run", "-c", "missing_name", "--json"])
    payload = json.loads(capsys.readouterr().out)
    assert code == cli.EXIT_EXECUTION_ERROR
    assert payload["hasError"] is True
    assert payload["error"].startswith("Reference Error:")


def test_cli_run_rejected(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["run", "-c", "import os"])
    output = capsys.readouterr().out
    assert code == cli.EXIT_REJECTED
    assert "process_access" in output


def test_cli_run_deadline_flag(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(
        ["run", "-c", "while True:\n    pass", "--skip-validation", "--deadline-ms", "500", "--json"]
    )
    payload = json.loads(capsys.readouterr().out)
    assert code == cli.EXIT_EXECUTION_ERROR
    assert payload["error"] == "Code execution timed out (0.5 seconds limit)"


def test_cli_validate_json(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["validate", "-c", "import os\neval('1')", "--json"])
    payload = json.loads(capsys.readouterr().out)
    assert code == cli.EXIT_REJECTED
    assert payload["isValid"] is False
    assert len(payload["errors"]) == 2


def test_cli_validate_clean(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["validate", "-c", "print(1)"])
    assert code == cli.EXIT_OK
    assert "passed validation" in capsys.readouterr().out


def test_cli_policy_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("[policy]\nmax_source_chars = 5\n", encoding="utf-8")
    code = cli.main(["--policy-file", str(policy_file), "validate", "-c", "x = 12345", "--json"])
    assert code == cli.EXIT_REJECTED
    assert json.loads(capsys.readouterr().out)["errors"] == ["Code too long (maximum 5 characters)"]


def test_cli_requires_command(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main([])
    assert excinfo.value.code == 2
    assert "Error:" in capsys.readouterr().out
