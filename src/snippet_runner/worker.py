from __future__ import annotations

import argparse
import ast
import builtins
import contextlib
import functools
import importlib
import io
import json
import math
import re
import string
import sys
import types
from typing import Any, Callable, Sequence

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except ImportError:  # pragma: no cover - platform specific
    _resource = None

SNIPPET_FILENAME = "<snippet>"
TRUNCATION_MARKER = "... output truncated"
INFRASTRUCTURE_EXIT = 3

BLOCKED_BUILTINS = frozenset(
    {
        "open",
        "eval",
        "exec",
        "compile",
        "input",
        "breakpoint",
        "globals",
        "locals",
        "vars",
        "help",
        "exit",
        "quit",
        "memoryview",
        "copyright",
        "credits",
        "license",
        "__loader__",
        "__spec__",
    }
)

# Attributes that lead from ordinary objects back to frames, code or globals.
BLOCKED_ATTRIBUTES = frozenset(
    {
        "mro",
        "gi_frame",
        "gi_code",
        "gi_yieldfrom",
        "cr_frame",
        "cr_code",
        "cr_await",
        "ag_frame",
        "ag_code",
        "ag_await",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "tb_frame",
        "tb_next",
    }
)

ALLOWED_DUNDER_ATTRIBUTES = frozenset({"__init__", "__name__", "__qualname__", "__doc__"})

# `str` methods that resolve attribute paths named inside the format string.
FORMAT_METHODS = frozenset({"format", "format_map"})
FORMAT_HOOK = "__snippet_format__"


class LimitError(RuntimeError):
    """Raised when the memory ceiling cannot be installed.

    Example:
        ```python
        raise LimitError("RLIMIT_AS not applied")
        ```
    """


class CaptureBuffer:
    """Append-only line buffer that receives everything the snippet prints.

    Example:
        ```python
        buffer = CaptureBuffer(limit_bytes=1024)
        buffer.append("Hello")
        ```
    """

    def __init__(self, limit_bytes: int) -> None:
        """Create an empty buffer bounded at `limit_bytes` of UTF-8 text.

        Example:
            ```python
            buffer = CaptureBuffer(limit_bytes=128 * 1024)
            ```
        """
        self.lines: list[str] = []
        self.truncated = False
        self._size = 0
        self.limit_bytes = limit_bytes

    def append(self, line: str) -> None:
        """Append one line, or stop accepting once the limit is reached.

        Example:
            ```python
            buffer.append("x = 1")
            ```
        """
        if self.truncated:
            return
        size = len(line.encode("utf-8", "replace")) + 1
        if self._size + size > self.limit_bytes:
            self.truncated = True
            self.lines.append(TRUNCATION_MARKER)
            return
        self._size += size
        self.lines.append(line)


def _best_effort_str(value: Any) -> str:
    """Stringify a value without letting a broken `__str__` escape.

    Example:
        ```python
        text = _best_effort_str(object())
        ```
    """
    try:
        return str(value)
    except Exception:
        return object.__repr__(value)


def stringify(value: Any) -> str:
    """Render a value the way captured output shows it.

    Strings pass through, containers become indented JSON, and anything
    JSON cannot express (cycles included) falls back to `str`.

    Example:
        ```python
        assert stringify({"a": 1}) == '{\\n  "a": 1\\n}'
        ```
    """
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, indent=2, ensure_ascii=False, default=_best_effort_str)
        except (TypeError, ValueError, RecursionError):
            return _best_effort_str(value)
    return _best_effort_str(value)


def make_capture(buffer: CaptureBuffer) -> Callable[..., None]:
    """Build the print replacement bound to one capture buffer.

    Example:
        ```python
        capture = make_capture(CaptureBuffer(1024))
        capture("sum:", 3)
        ```
    """

    def capture(*args: Any, sep: Any = " ", **_options: Any) -> None:
        """Join stringified arguments and append them as one line.

        Example:
            ```python
            capture("a", {"b": 1})
            ```
        """
        joiner = sep if isinstance(sep, str) else " "
        buffer.append(joiner.join(stringify(arg) for arg in args))

    return capture


def is_blocked_attribute(name: str) -> bool:
    """Return True for attribute names snippets may not touch.

    Example:
        ```python
        assert is_blocked_attribute("__globals__")
        ```
    """
    if name in ALLOWED_DUNDER_ATTRIBUTES:
        return False
    return name.startswith("_") or name in BLOCKED_ATTRIBUTES


def find_blocked_attributes(tree: ast.AST) -> list[str]:
    """Collect blocked attribute names used anywhere in a parsed snippet.

    Example:
        ```python
        names = find_blocked_attributes(ast.parse("x.__class__"))
        ```
    """
    found: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and is_blocked_attribute(node.attr):
            found.append(node.attr)
        elif isinstance(node, ast.MatchClass):
            found.extend(name for name in node.kwd_attrs if is_blocked_attribute(name))
    return found


def _check_attribute(name: Any) -> None:
    """Refuse dynamic access to a blocked attribute name.

    Example:
        ```python
        _check_attribute("real")
        ```
    """
    if isinstance(name, str) and is_blocked_attribute(name):
        raise PermissionError(f"access to attribute '{name}' is not allowed")


def _guarded_getattr(obj: Any, name: str, *default: Any) -> Any:
    """`getattr` that honours the attribute guard.

    Example:
        ```python
        real = _guarded_getattr(3, "real")
        ```
    """
    _check_attribute(name)
    if name in FORMAT_METHODS:
        try:
            return bind_format_method(obj, name)
        except AttributeError:
            if default:
                return default[0]
            raise
    return getattr(obj, name, *default)


def _guarded_hasattr(obj: Any, name: str) -> bool:
    """`hasattr` that honours the attribute guard.

    Example:
        ```python
        assert _guarded_hasattr(3, "real")
        ```
    """
    _check_attribute(name)
    return hasattr(obj, name)


def _guarded_setattr(obj: Any, name: str, value: Any) -> None:
    """`setattr` that honours the attribute guard.

    Example:
        ```python
        _guarded_setattr(namespace, "x", 1)
        ```
    """
    _check_attribute(name)
    setattr(obj, name, value)


def _guarded_delattr(obj: Any, name: str) -> None:
    """`delattr` that honours the attribute guard.

    Example:
        ```python
        _guarded_delattr(namespace, "x")
        ```
    """
    _check_attribute(name)
    delattr(obj, name)


def field_attributes(field_name: str) -> list[str]:
    """Return the attribute names a replacement field walks through.

    Index parts (`[...]`) are keys, not attributes, so they are dropped first.

    Example:
        ```python
        assert field_attributes("0[a.b].real") == ["real"]
        ```
    """
    return re.sub(r"\[[^\]]*\]", "", field_name).split(".")[1:]


class GuardedFormatter(string.Formatter):
    """`str.format` semantics with every field lookup run through the attribute guard.

    Example:
        ```python
        assert GuardedFormatter().format("{0.real}", 3) == "3"
        ```
    """

    def get_field(self, field_name: str, args: Sequence[Any], kwargs: Any) -> Any:
        """Refuse blocked attributes before resolving the field.

        Example:
            ```python
            obj, key = GuardedFormatter().get_field("0.imag", (2j,), {})
            ```
        """
        for name in field_attributes(field_name):
            _check_attribute(name)
        return super().get_field(field_name, args, kwargs)


_FORMATTER = GuardedFormatter()


def _format_map(format_string: str, mapping: Any) -> str:
    """Guarded counterpart of `str.format_map`.

    Example:
        ```python
        assert _format_map("{x}", {"x": 1}) == "1"
        ```
    """
    return _FORMATTER.vformat(format_string, (), mapping)


_GUARDED_FORMAT_METHODS: dict[str, Callable[..., str]] = {
    "format": _FORMATTER.format,
    "format_map": _format_map,
}
_BUILTIN_METHOD = type("".format)


def bind_format_method(obj: Any, name: str) -> Any:
    """Resolve `obj.format` or `obj.format_map`, swapping in the guarded formatter for `str`.

    Methods a snippet defines itself are returned unchanged.

    Example:
        ```python
        assert bind_format_method("{0}", "format")(7) == "7"
        assert bind_format_method(str, "format")("{0}", 7) == "7"
        ```
    """
    target = getattr(obj, name)
    if target is getattr(str, name):
        return _GUARDED_FORMAT_METHODS[name]
    if type(target) is _BUILTIN_METHOD and target.__name__ == name:
        owner = target.__self__
        if isinstance(owner, str):
            return functools.partial(_GUARDED_FORMAT_METHODS[name], owner)
    return target


class FormatMethodRewriter(ast.NodeTransformer):
    """Route every `.format` / `.format_map` lookup through `bind_format_method`.

    Example:
        ```python
        tree = ast.fix_missing_locations(FormatMethodRewriter().visit(ast.parse("'{}'.format(1)")))
        ```
    """

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        """Replace a loaded format attribute with a call to the format hook.

        Example:
            ```python
            new_node = FormatMethodRewriter().visit_Attribute(node)
            ```
        """
        self.generic_visit(node)
        if node.attr not in FORMAT_METHODS or not isinstance(node.ctx, ast.Load):
            return node
        call = ast.Call(
            func=ast.Name(id=FORMAT_HOOK, ctx=ast.Load()),
            args=[node.value, ast.Constant(node.attr)],
            keywords=[],
        )
        return ast.copy_location(call, node)


def public_view(module: types.ModuleType) -> types.ModuleType:
    """Copy a module's public, non-module attributes into a fresh module.

    Example:
        ```python
        math_view = public_view(importlib.import_module("math"))
        ```
    """
    view = types.ModuleType(module.__name__, module.__doc__)
    for name, value in vars(module).items():
        if name.startswith("_") or isinstance(value, types.ModuleType):
            continue
        setattr(view, name, value)
    return view


def preload_modules(names: Sequence[str]) -> dict[str, types.ModuleType]:
    """Import allowed modules before limits apply and keep public views.

    Example:
        ```python
        views = preload_modules(["math", "json"])
        ```
    """
    views: dict[str, types.ModuleType] = {}
    for name in names:
        if not name or "." in name:
            continue
        try:
            views[name] = public_view(importlib.import_module(name))
        except ImportError:
            continue
    return views


def make_guarded_import(views: dict[str, types.ModuleType]) -> Callable[..., Any]:
    """Build the `__import__` replacement that serves preloaded views only.

    Example:
        ```python
        guarded_import = make_guarded_import(preload_modules(["math"]))
        ```
    """

    def _guarded_import(
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> Any:
        """Return the public view of an allowed top-level module.

        Example:
            ```python
            math_view = _guarded_import("math")
            ```
        """
        if level != 0:
            raise ImportError("Relative imports are not available in snippets")
        if name not in views:
            raise ImportError(f"Import '{name}' is not allowed in the sandbox")
        return views[name]

    return _guarded_import


def build_safe_builtins(
    capture: Callable[..., None],
    guarded_import: Callable[..., Any],
) -> dict[str, Any]:
    """Build the builtins mapping snippets run against.

    Example:
        ```python
        safe = build_safe_builtins(capture, guarded_import)
        ```
    """
    safe = {
        name: value
        for name, value in vars(builtins).items()
        if name not in BLOCKED_BUILTINS
    }
    safe["__import__"] = guarded_import
    safe["getattr"] = _guarded_getattr
    safe["hasattr"] = _guarded_hasattr
    safe["setattr"] = _guarded_setattr
    safe["delattr"] = _guarded_delattr
    safe[FORMAT_HOOK] = bind_format_method
    safe["print"] = capture
    for alias in ("log", "error", "warn", "info"):
        safe[alias] = capture
    safe["console"] = types.SimpleNamespace(log=capture, error=capture, warn=capture, info=capture)
    return safe


def split_final_expression(tree: ast.Module) -> tuple[ast.Module, ast.Expression | None]:
    """Separate a trailing expression statement so its value can be kept.

    Example:
        ```python
        body, final = split_final_expression(ast.parse("x = 2\\nx + 2"))
        ```
    """
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        body = ast.Module(body=tree.body[:-1], type_ignores=[])
        return body, ast.Expression(body=tree.body[-1].value)
    return tree, None


def current_address_space() -> int:
    """Return this process's mapped address space in bytes, 0 if unknown.

    The ceiling is applied as headroom on top of what the interpreter and
    preloaded modules already map.

    Example:
        ```python
        baseline = current_address_space()
        ```
    """
    try:
        with open("/proc/self/statm", encoding="ascii") as handle:
            pages = int(handle.read().split()[0])
    except (OSError, ValueError, IndexError):
        return 0
    return pages * _resource.getpagesize() if _resource is not None else 0


def apply_memory_limit(memory_limit_mb: int) -> None:
    """Install the address-space ceiling and forbid file writes and core dumps.

    Example:
        ```python
        apply_memory_limit(128)
        ```
    """
    if _resource is None:
        raise LimitError("RLIMIT limits unavailable on this platform")
    mem_bytes = current_address_space() + int(memory_limit_mb) * 1024 * 1024
    try:
        _, current_hard = _resource.getrlimit(_resource.RLIMIT_AS)
        if current_hard in (-1, _resource.RLIM_INFINITY):
            target_hard = mem_bytes
        else:
            target_hard = min(mem_bytes, current_hard)
        target_soft = min(mem_bytes, target_hard)
        _resource.setrlimit(_resource.RLIMIT_AS, (target_soft, target_hard))
        _resource.setrlimit(_resource.RLIMIT_FSIZE, (0, 0))
        _resource.setrlimit(_resource.RLIMIT_CORE, (0, 0))
    except (ValueError, OSError) as exc:
        raise LimitError(f"RLIMIT_AS not applied: {exc}") from exc


def apply_cpu_backstop(deadline_ms: int) -> list[str]:
    """Cap CPU seconds slightly above the wall-clock deadline.

    Example:
        ```python
        warnings = apply_cpu_backstop(5000)
        ```
    """
    if _resource is None:
        return ["RLIMIT_CPU unavailable on this platform"]
    seconds = math.ceil(deadline_ms / 1000) + 1
    try:
        _, current_hard = _resource.getrlimit(_resource.RLIMIT_CPU)
        hard = seconds + 1
        if current_hard not in (-1, _resource.RLIM_INFINITY):
            hard = min(hard, current_hard)
        _resource.setrlimit(_resource.RLIMIT_CPU, (min(seconds, hard), hard))
    except (ValueError, OSError) as exc:
        return [f"RLIMIT_CPU not applied: {exc}"]
    return []


def _failure(error_type: str, message: str, *, resource_exceeded: bool = False) -> dict[str, Any]:
    """Build a failure report; captured lines are deliberately left out.

    Example:
        ```python
        report = _failure("NameError", "NameError: name 'x' is not defined")
        ```
    """
    return {
        "ok": False,
        "lines": [],
        "value": None,
        "error_type": error_type,
        "error": message,
        "resource_exceeded": resource_exceeded,
    }


def _clip(text: str, limit_bytes: int) -> str:
    """Cut an over-long final value and mark it as truncated.

    Example:
        ```python
        short = _clip("x" * 10, 4)
        ```
    """
    if len(text.encode("utf-8", "replace")) <= limit_bytes:
        return text
    return text[:limit_bytes] + "\n" + TRUNCATION_MARKER


def _normalize_system_exit(exit_code: Any) -> str | None:
    """Return an error message for a failing `SystemExit`, else None.

    Example:
        ```python
        assert _normalize_system_exit(0) is None
        ```
    """
    if exit_code is None or (type(exit_code) in (int, bool) and not exit_code):
        return None
    return f"SystemExit: {exit_code}"


def describe_guest_exception(exc: BaseException) -> dict[str, Any] | None:
    """Turn anything a snippet raised into a failure report.

    Returns None for a clean `SystemExit`, which counts as success. Rendering
    runs snippet code (`__str__`, metaclass properties), so a failure while
    describing the exception still yields a report.

    Example:
        ```python
        report = describe_guest_exception(KeyboardInterrupt("stop"))
        assert report["error"] == "KeyboardInterrupt: stop"
        ```
    """
    try:
        if isinstance(exc, MemoryError):
            return _failure(
                "MemoryError", "MemoryError: memory limit exceeded", resource_exceeded=True
            )
        if isinstance(exc, SystemExit):
            message = _normalize_system_exit(exc.code)
            return None if message is None else _failure("SystemExit", message)
        name = str(type(exc).__name__)
        return _failure(name, f"{name}: {exc}")
    except BaseException:
        return _failure("BaseException", f"{object.__repr__(exc)} (unprintable exception)")


def execute(source: str, buffer: CaptureBuffer, views: dict[str, types.ModuleType]) -> dict[str, Any]:
    """Compile and run one snippet, returning the report dictionary.

    Everything the snippet raises, `BaseException` included, ends up in the
    report; rendering the final value counts as snippet code too.

    Example:
        ```python
        report = execute("2 + 2", CaptureBuffer(1024), {})
        ```
    """
    try:
        tree = ast.parse(source, filename=SNIPPET_FILENAME, mode="exec")
        blocked = find_blocked_attributes(tree)
        if blocked:
            return _failure(
                "PermissionError",
                f"PermissionError: access to attribute '{blocked[0]}' is not allowed",
            )
        tree = ast.fix_missing_locations(FormatMethodRewriter().visit(tree))
        body, final = split_final_expression(tree)
        body_code = compile(body, SNIPPET_FILENAME, "exec")
        final_code = compile(final, SNIPPET_FILENAME, "eval") if final is not None else None
    except (SyntaxError, ValueError, RecursionError) as exc:
        return _failure(type(exc).__name__, f"{type(exc).__name__}: {exc}")

    capture = make_capture(buffer)
    namespace: dict[str, Any] = {
        "__builtins__": build_safe_builtins(capture, make_guarded_import(views)),
        "__name__": "__snippet__",
    }
    rendered: str | None = None
    try:
        with (
            contextlib.redirect_stdout(io.StringIO()),
            contextlib.redirect_stderr(io.StringIO()),
        ):
            exec(body_code, namespace, namespace)
            if final_code is not None:
                value = eval(final_code, namespace, namespace)
                if value is not None:
                    rendered = _clip(stringify(value), buffer.limit_bytes)
    except BaseException as exc:
        report = describe_guest_exception(exc)
        if report is not None:
            return report

    return {
        "ok": True,
        "lines": buffer.lines,
        "value": rendered,
        "truncated": buffer.truncated,
    }


def _emit(report: dict[str, Any]) -> None:
    """Write the JSON report to the real stdout.

    Example:
        ```python
        _emit({"ok": True, "lines": []})
        ```
    """
    sys.stdout.write(json.dumps(report, default=str))
    sys.stdout.flush()


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse the isolate settings passed on the command line.

    Example:
        ```python
        args = _parse_args(["--memory-limit-mb", "128"])
        ```
    """
    parser = argparse.ArgumentParser(prog="snippet-runner-worker")
    parser.add_argument("--memory-limit-mb", type=int, default=128)
    parser.add_argument("--allowed-imports", default="")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Worker entry point: limits first, then read one payload and run it.

    Example:
        ```python
        raise SystemExit(main(["--memory-limit-mb", "128"]))
        ```
    """
    args = _parse_args(argv)
    views = preload_modules([name for name in args.allowed_imports.split(",") if name])
    try:
        apply_memory_limit(args.memory_limit_mb)
    except LimitError as exc:
        _emit({"ok": False, "infrastructure": True, "error": str(exc)})
        return INFRASTRUCTURE_EXIT

    try:
        request = json.loads(sys.stdin.read() or "{}")
        source = str(request.get("source", ""))
        warnings = apply_cpu_backstop(int(request.get("deadline_ms", 5000)))
        buffer = CaptureBuffer(limit_bytes=int(request.get("max_output_kb", 128)) * 1024)
        report = execute(source, buffer, views)
    except MemoryError:
        report = _failure("MemoryError", "MemoryError: memory limit exceeded", resource_exceeded=True)
        warnings = []
    report["limit_warnings"] = warnings
    _emit(report)
    return 0 if report["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
