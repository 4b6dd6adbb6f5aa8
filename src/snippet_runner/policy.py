from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping


def _default_policy_path() -> Path:
    """Return bundled default policy TOML path.

    Example:
        ```python
        path = _default_policy_path()
        ```
    """
    return Path(__file__).with_name("default_policy.toml")


def _read_policy_toml(path: Path) -> dict[str, Any]:
    """Read policy TOML and return normalized policy dictionary.

    Example:
        ```python
        raw = _read_policy_toml(Path("/tmp/policy.toml"))
        ```
    """
    if not path.exists():
        return {
            "deadline_ms": 5000,
            "memory_limit_mb": 128,
            "max_source_chars": 50000,
            "max_output_kb": 128,
            "allowed_imports": ["math", "json", "random", "re", "itertools", "collections"],
        }
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    policy_obj = raw.get("policy", raw)
    if not isinstance(policy_obj, dict):
        raise ValueError("Policy config must be a TOML table")
    return policy_obj


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings policy field.

    Example:
        ```python
        allowed = _list_of_str(["math", "json"], "allowed_imports")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


def _positive_int(value: Any, field_name: str) -> int:
    """Coerce a limit to a positive integer or fail loudly.

    Example:
        ```python
        deadline = _positive_int("5000", "deadline_ms")
        ```
    """
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{field_name}' must be an integer") from exc
    if number <= 0:
        raise ValueError(f"'{field_name}' must be positive")
    return number


_DEFAULT_POLICY_RAW = _read_policy_toml(_default_policy_path())
DEFAULT_DEADLINE_MS = int(_DEFAULT_POLICY_RAW.get("deadline_ms", 5000))
DEFAULT_MEMORY_LIMIT_MB = int(_DEFAULT_POLICY_RAW.get("memory_limit_mb", 128))
DEFAULT_MAX_SOURCE_CHARS = int(_DEFAULT_POLICY_RAW.get("max_source_chars", 50000))
DEFAULT_MAX_OUTPUT_KB = int(_DEFAULT_POLICY_RAW.get("max_output_kb", 128))
DEFAULT_ALLOWED_IMPORTS = _list_of_str(
    _DEFAULT_POLICY_RAW.get("allowed_imports", []), "allowed_imports"
)


@dataclass(slots=True)
class SandboxPolicy:
    """Limits applied to every snippet a `Sandbox` runs.

    Example:
        ```python
        policy = SandboxPolicy(deadline_ms=2000, memory_limit_mb=64)
        ```
    """

    deadline_ms: int = DEFAULT_DEADLINE_MS
    memory_limit_mb: int = DEFAULT_MEMORY_LIMIT_MB
    max_source_chars: int = DEFAULT_MAX_SOURCE_CHARS
    max_output_kb: int = DEFAULT_MAX_OUTPUT_KB
    allowed_imports: list[str] = field(default_factory=lambda: DEFAULT_ALLOWED_IMPORTS.copy())
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate limits after dataclass initialization.

        Example:
            ```python
            SandboxPolicy(deadline_ms=100)
            ```
        """
        self.deadline_ms = _positive_int(self.deadline_ms, "deadline_ms")
        self.memory_limit_mb = _positive_int(self.memory_limit_mb, "memory_limit_mb")
        self.max_source_chars = _positive_int(self.max_source_chars, "max_source_chars")
        self.max_output_kb = _positive_int(self.max_output_kb, "max_output_kb")

    @classmethod
    def from_file(cls, config_path: str) -> "SandboxPolicy":
        """Create a policy instance from a TOML file.

        Example:
            ```python
            policy = SandboxPolicy.from_file("/tmp/policy.toml")
            ```
        """
        raw = _read_policy_toml(Path(config_path))
        return cls(
            deadline_ms=raw.get("deadline_ms", DEFAULT_DEADLINE_MS),
            memory_limit_mb=raw.get("memory_limit_mb", DEFAULT_MEMORY_LIMIT_MB),
            max_source_chars=raw.get("max_source_chars", DEFAULT_MAX_SOURCE_CHARS),
            max_output_kb=raw.get("max_output_kb", DEFAULT_MAX_OUTPUT_KB),
            allowed_imports=_list_of_str(
                raw.get("allowed_imports", DEFAULT_ALLOWED_IMPORTS), "allowed_imports"
            ),
            config_path=config_path,
        )


@dataclass(frozen=True, slots=True)
class ExecutionOptions:
    """Per-call overrides; `None` means use the policy value.

    Example:
        ```python
        options = ExecutionOptions(deadline_ms=1000)
        ```
    """

    deadline_ms: int | None = None
    memory_limit_mb: int | None = None

    def __post_init__(self) -> None:
        """Reject non-positive overrides.

        Example:
            ```python
            ExecutionOptions(memory_limit_mb=64)
            ```
        """
        for name in ("deadline_ms", "memory_limit_mb"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, _positive_int(value, name))

    @classmethod
    def coerce(cls, options: "ExecutionOptions | Mapping[str, Any] | None") -> "ExecutionOptions":
        """Accept options as a dataclass or a camelCase/snake_case mapping.

        Example:
            ```python
            options = ExecutionOptions.coerce({"deadlineMs": 1000, "memoryLimitMB": 64})
            ```
        """
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if not isinstance(options, Mapping):
            raise TypeError("options must be ExecutionOptions or a mapping")
        return cls(
            deadline_ms=options.get("deadline_ms", options.get("deadlineMs")),
            memory_limit_mb=options.get("memory_limit_mb", options.get("memoryLimitMB")),
        )

    def resolve(self, policy: SandboxPolicy) -> tuple[int, int]:
        """Return `(deadline_ms, memory_limit_mb)` with policy fallbacks.

        Example:
            ```python
            deadline_ms, memory_limit_mb = ExecutionOptions().resolve(SandboxPolicy())
            ```
        """
        deadline_ms = self.deadline_ms if self.deadline_ms is not None else policy.deadline_ms
        memory_limit_mb = (
            self.memory_limit_mb if self.memory_limit_mb is not None else policy.memory_limit_mb
        )
        return deadline_ms, memory_limit_mb
