"""Static screening of snippet source before any isolate is allocated.

The denylist is a usability heuristic: it turns away obviously hostile or
runaway snippets early. It is not what keeps the host safe; the isolate is.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .policy import DEFAULT_MAX_SOURCE_CHARS

RULE_EMPTY = "empty_or_wrong_type"
RULE_TOO_LONG = "too_long"
RULE_FORBIDDEN = "forbidden_pattern"


@dataclass(frozen=True, slots=True)
class DeniedPattern:
    """Named source pattern that validation refuses.

    Example:
        ```python
        pattern = DeniedPattern("dynamic_evaluation", re.compile(r"eval\\s*\\("))
        ```
    """

    name: str
    regex: re.Pattern[str]


@dataclass(frozen=True, slots=True)
class Violation:
    """One reason a submission failed validation.

    Example:
        ```python
        violation = Violation(RULE_TOO_LONG, None, "", "Code too long (maximum 50,000 characters)")
        ```
    """

    rule: str
    pattern: str | None
    fragment: str
    message: str


@dataclass(frozen=True, slots=True)
class ValidationOutcome:
    """Every violation found in one source text, in detection order.

    Example:
        ```python
        outcome = validate("print('hi')")
        assert outcome.is_valid
        ```
    """

    valid: bool
    violations: tuple[Violation, ...] = ()

    @property
    def is_valid(self) -> bool:
        """Alias used by callers that speak the wire vocabulary.

        Example:
            ```python
            ok = outcome.is_valid
            ```
        """
        return self.valid

    @property
    def errors(self) -> list[str]:
        """Return violation messages in detection order.

        Example:
            ```python
            messages = validate("import os").errors
            ```
        """
        return [violation.message for violation in self.violations]

    def to_dict(self) -> dict[str, Any]:
        """Return the `{isValid, errors}` shape handed to API callers.

        Example:
            ```python
            payload = validate("x = 1").to_dict()
            ```
        """
        return {"isValid": self.valid, "errors": self.errors}


def _deny(name: str, pattern: str) -> DeniedPattern:
    """Compile one denylist entry.

    Example:
        ```python
        entry = _deny("subprocess_spawn", r"\\bsubprocess\\b")
        ```
    """
    return DeniedPattern(name=name, regex=re.compile(pattern))


DENYLIST: tuple[DeniedPattern, ...] = (
    _deny("dynamic_import", r"__import__\s*\(|\bimportlib\b"),
    _deny(
        "process_access",
        r"\b(?:import|from)\s+(?:os|sys|signal|resource|ctypes)\b|(?<![\w.])(?:os|sys)\.\w+",
    ),
    _deny("filesystem_access", r"(?<![\w.])open\s*\(|\b(?:pathlib|shutil|tempfile|glob)\b"),
    _deny("subprocess_spawn", r"\b(?:subprocess|multiprocessing|pty)\b"),
    _deny("dynamic_evaluation", r"(?<![\w.])(?:eval|exec|compile)\s*\("),
    _deny("dynamic_function", r"\b(?:FunctionType|CodeType|LambdaType)\b"),
    _deny("infinite_while_loop", r"\bwhile\s*\(?\s*(?:True|1)\s*\)?\s*:"),
    _deny(
        "infinite_for_loop",
        r"\bfor\b[^\n]*?\bin\s+(?:itertools\.)?(?:count|cycle)\s*\(|\biter\s*\(\s*int\s*,",
    ),
)


def validate(
    source: Any,
    *,
    max_chars: int = DEFAULT_MAX_SOURCE_CHARS,
    denylist: tuple[DeniedPattern, ...] = DENYLIST,
) -> ValidationOutcome:
    """Screen source text and collect every violation, not just the first.

    Example:
        ```python
        outcome = validate("import os\\nopen('x')")
        assert len(outcome.violations) == 2
        ```
    """
    if not isinstance(source, str) or not source.strip():
        violation = Violation(RULE_EMPTY, None, "", "Code must be a non-empty string")
        return ValidationOutcome(valid=False, violations=(violation,))

    violations: list[Violation] = []
    if len(source) > max_chars:
        violations.append(
            Violation(
                RULE_TOO_LONG,
                None,
                "",
                f"Code too long (maximum {max_chars:,} characters)",
            )
        )

    for entry in denylist:
        match = entry.regex.search(source)
        if match is None:
            continue
        fragment = match.group(0).strip()
        violations.append(
            Violation(
                RULE_FORBIDDEN,
                entry.name,
                fragment,
                f"Potentially unsafe code detected: {entry.name} ({fragment!r})",
            )
        )

    return ValidationOutcome(valid=not violations, violations=tuple(violations))
