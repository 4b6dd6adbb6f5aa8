from pathlib import Path

import pytest

from snippet_runner import ExecutionOptions, Sandbox, SandboxPolicy


def test_defaults_match_bundled_policy() -> None:
    policy = SandboxPolicy()
    assert policy.deadline_ms == 5000
    assert policy.memory_limit_mb == 128
    assert policy.max_source_chars == 50000
    assert "math" in policy.allowed_imports
    assert "os" not in policy.allowed_imports


@pytest.mark.parametrize("module", ["operator", "string", "typing", "inspect", "importlib"])
def test_default_allowlist_excludes_introspection_helpers(module: str) -> None:
    assert module not in SandboxPolicy().allowed_imports


def test_policy_file_overrides(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text(
        (
            "[policy]\n"
            "deadline_ms = 1500\n"
            "memory_limit_mb = 64\n"
            "max_source_chars = 100\n"
            "allowed_imports = [\"math\"]\n"
        ),
        encoding="utf-8",
    )
    policy = SandboxPolicy.from_file(str(policy_file))
    assert policy.deadline_ms == 1500
    assert policy.memory_limit_mb == 64
    assert policy.allowed_imports == ["math"]
    assert policy.config_path == str(policy_file)

    sandbox = Sandbox(policy_file=str(policy_file))
    assert sandbox.validate("x = 1\n" * 30).errors == ["Code too long (maximum 100 characters)"]


def test_policy_rejects_bad_values(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="deadline_ms"):
        SandboxPolicy(deadline_ms=0)
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("[policy]\nallowed_imports = \"math\"\n", encoding="utf-8")
    with pytest.raises(ValueError, match="allowed_imports"):
        SandboxPolicy.from_file(str(policy_file))


def test_policy_and_policy_file_are_exclusive(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="either"):
        Sandbox(policy=SandboxPolicy(), policy_file=str(tmp_path / "policy.toml"))


def test_options_fall_back_to_policy() -> None:
    policy = SandboxPolicy(deadline_ms=2000, memory_limit_mb=96)
    assert ExecutionOptions().resolve(policy) == (2000, 96)
    assert ExecutionOptions(deadline_ms=500).resolve(policy) == (500, 96)


def test_options_accept_wire_mapping() -> None:
    options = ExecutionOptions.coerce({"deadlineMs": 1000, "memoryLimitMB": 64})
    assert options == ExecutionOptions(deadline_ms=1000, memory_limit_mb=64)
    assert ExecutionOptions.coerce({"deadline_ms": 10}).deadline_ms == 10
    assert ExecutionOptions.coerce(None) == ExecutionOptions()


def test_options_reject_non_positive() -> None:
    with pytest.raises(ValueError, match="memory_limit_mb"):
        ExecutionOptions(memory_limit_mb=0)
    with pytest.raises(TypeError):
        ExecutionOptions.coerce(5000)  # type: ignore[arg-type]
