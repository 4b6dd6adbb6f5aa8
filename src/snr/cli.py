from __future__ import annotations

import argparse
import json
import sys
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter
from snippet_runner import CodeRejected, ExecutionOptions, Sandbox, SandboxPolicy

_CONSOLE = Console(no_color=False)

EXIT_OK = 0
EXIT_EXECUTION_ERROR = 1
EXIT_REJECTED = 2


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m snr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def _add_source_argument(parser: argparse.ArgumentParser) -> None:
    """Add the positional snippet source argument.

    Example:
        ```python
        _add_source_argument(run_cmd)
        ```
    """
    parser.add_argument(
        "source",
        nargs="?",
        default="-",
        help="Snippet file to read, or '-' for stdin (default: -).",
    )
    parser.add_argument(
        "-c",
        "--code",
        help="Snippet text given inline instead of a file.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the raw JSON payload instead of a panel.",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for running and validating snippets.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m snr",
        description=(
            "snippet-runner CLI\n"
            "Validate and run short untrusted Python snippets in a disposable isolate."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m snr run -c \"print('Hello, World!')\"\n"
            "  python -m snr run snippet.py --deadline-ms 2000\n"
            "  python -m snr validate snippet.py\n"
            "  cat snippet.py | python -m snr run --json"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--policy-file",
        help=(
            "Load limits from a TOML policy file.\n"
            "Example: --policy-file ./policy.toml"
        ),
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Validate then run a snippet.",
        description=(
            "Validate a snippet, run it in a fresh isolate, and print the result.\n"
            "Exit codes: 0 success, 1 execution error, 2 rejected by validation."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    _add_source_argument(run_cmd)
    run_cmd.add_argument(
        "--deadline-ms",
        type=int,
        help="Wall-clock deadline in milliseconds (default: policy, 5000).",
    )
    run_cmd.add_argument(
        "--memory-limit-mb",
        type=int,
        help="Memory ceiling in megabytes (default: policy, 128).",
    )
    run_cmd.add_argument(
        "--skip-validation",
        action="store_true",
        help="Run without static screening; the isolate still applies.",
    )

    validate_cmd = sub.add_parser(
        "validate",
        help="Report every validation violation without running.",
        description="Check size limits and the unsafe-pattern denylist.",
        formatter_class=_HELP_FORMATTER,
    )
    _add_source_argument(validate_cmd)

    return parser


def _read_source(args: argparse.Namespace) -> str:
    """Return snippet text from `--code`, a file, or stdin.

    Example:
        ```python
        text = _read_source(args)
        ```
    """
    if args.code is not None:
        return args.code
    if args.source == "-":
        return sys.stdin.read()
    return Path(args.source).read_text(encoding="utf-8")


def _print_json(payload: dict[str, Any]) -> None:
    """Write a JSON payload to stdout.

    Example:
        ```python
        _print_json({"isValid": True, "errors": []})
        ```
    """
    sys.stdout.write(json.dumps(payload) + "\n")


def _print_violations(errors: list[str]) -> None:
    """Render validation violations in a rich table.

    Example:
        ```python
        _print_violations(["Code must be a non-empty string"])
        ```
    """
    table = Table(title="Validation Violations")
    table.add_column("#", style="cyan")
    table.add_column("Violation", style="red")
    for index, message in enumerate(errors, start=1):
        table.add_row(str(index), message)
    _CONSOLE.print(table)


def _command_validate(sandbox: Sandbox, args: argparse.Namespace) -> int:
    """Handle `snr validate`.

    Example:
        ```python
        code = _command_validate(sandbox, args)
        ```
    """
    outcome = sandbox.validate(_read_source(args))
    if args.json:
        _print_json(outcome.to_dict())
    elif outcome.valid:
        _CONSOLE.print(Panel.fit("Snippet passed validation.", style="bold green"))
    else:
        _print_violations(outcome.errors)
    return EXIT_OK if outcome.valid else EXIT_REJECTED


def _command_run(sandbox: Sandbox, args: argparse.Namespace) -> int:
    """Handle `snr run`.

    Example:
        ```python
        code = _command_run(sandbox, args)
        ```
    """
    options = ExecutionOptions(deadline_ms=args.deadline_ms, memory_limit_mb=args.memory_limit_mb)
    try:
        result = sandbox.submit(
            _read_source(args),
            options,
            skip_validation=args.skip_validation,
        )
    except CodeRejected as exc:
        if args.json:
            _print_json(exc.outcome.to_dict())
        else:
            _print_violations(exc.errors)
        return EXIT_REJECTED

    if args.json:
        _print_json(result.to_dict())
    elif result.has_error:
        _CONSOLE.print(
            Panel.fit(
                Text(result.error),
                title="Error",
                subtitle=f"{result.execution_time_ms} ms",
                border_style="red",
            )
        )
    else:
        _CONSOLE.print(
            Panel.fit(
                Text(result.output),
                title="Output",
                subtitle=f"{result.execution_time_ms} ms",
                border_style="green",
            )
        )
    return EXIT_EXECUTION_ERROR if result.has_error else EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `snr` CLI command handler.

    Example:
        ```python
        code = main(["run", "-c", "2 + 2"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    policy = SandboxPolicy.from_file(args.policy_file) if args.policy_file else None

    with Sandbox(policy=policy) as sandbox:
        if args.command == "run":
            return _command_run(sandbox, args)
        if args.command == "validate":
            return _command_validate(sandbox, args)

    parser.error("Unhandled command")
    return 2
