from __future__ import annotations

import argparse
import dataclasses
import logging
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter
from safe_cpp_runner import CompileFailed, ExecutionPipeline, RunnerServer, ServerConfig, SnippetStore
from safe_cpp_runner.errors import InternalFailure
from safe_cpp_runner.execution.toolchain import preflight_validate_toolchain

_CONSOLE = Console(no_color=False)


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
        parser = _RichArgumentParser(prog="python -m scr")
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


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the safe-cpp-runner server and local runs.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m scr",
        description=(
            "safe-cpp-runner CLI\n"
            "Compile and run C++ submissions under CPU, memory, file-size and\n"
            "descriptor ceilings, locally or behind a loopback HTTP server."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m scr serve\n"
            "  python -m scr serve --port 9090 --workers 8\n"
            "  python -m scr run star_code.cpp --input '3 4'\n"
            "  python -m scr config\n"
            "  python -m scr snippets\n\n"
            "Config Examples:\n"
            "  python -m scr --config runner.toml serve\n"
            "  python -m scr --log-level DEBUG run main.cpp --input-file in.txt"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to a TOML config layered over the bundled defaults.\n"
            "Tables: [server], [toolchain], [limits]."
        ),
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for server and pipeline logs (default: INFO).",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    serve_cmd = sub.add_parser(
        "serve",
        help="Run the HTTP server.",
        description=(
            "Serve /, /run, /load and /save on a loopback listener.\n"
            "Each connection is handled by a bounded worker pool."
        ),
        epilog=(
            "Examples:\n"
            "  python -m scr serve\n"
            "  python -m scr serve --host 127.0.0.1 --port 8080 --workers 4"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    serve_cmd.add_argument("--host", help="Listen address (default from config: 127.0.0.1).")
    serve_cmd.add_argument("--port", type=int, help="Listen port (default from config: 8080).")
    serve_cmd.add_argument("--workers", type=int, help="Worker threads handling connections.")
    serve_cmd.add_argument(
        "--skip-preflight",
        action="store_true",
        help="Start even if the compiler is not found on PATH.",
    )

    run_cmd = sub.add_parser(
        "run",
        help="Compile and run one local source file.",
        description=(
            "Compile SOURCE with the configured toolchain and run it once\n"
            "under the configured resource limits."
        ),
        epilog=(
            "Examples:\n"
            "  python -m scr run main.cpp\n"
            "  python -m scr run main.cpp --input '1 2 3'\n"
            "  python -m scr run main.cpp --input-file cases/1.in"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("source", help="C++ source file to compile and run.")
    input_group = run_cmd.add_mutually_exclusive_group()
    input_group.add_argument("--input", default="", help="Text passed to the program's stdin.")
    input_group.add_argument("--input-file", help="File whose contents are passed to stdin.")

    sub.add_parser(
        "config",
        help="Show the effective configuration.",
        description="Print the merged configuration (bundled defaults plus --config).",
        formatter_class=_HELP_FORMATTER,
    )

    sub.add_parser(
        "snippets",
        help="List saved snippets.",
        description="List snippet files in the configured storage directory.",
        formatter_class=_HELP_FORMATTER,
    )

    return parser


def load_config(args: argparse.Namespace) -> ServerConfig:
    """Create the effective ServerConfig from --config and command flags.

    Example:
        ```python
        config = load_config(args)
        ```
    """
    config = ServerConfig.from_file(args.config) if args.config else ServerConfig()
    overrides: dict[str, Any] = {}
    for flag, field_name in (("host", "host"), ("port", "port"), ("workers", "max_workers")):
        value = getattr(args, flag, None)
        if value is not None:
            overrides[field_name] = value
    if overrides:
        config = dataclasses.replace(config, **overrides)
    return config


def configure_logging(level: str) -> None:
    """Route log records through a Rich handler on the shared console.

    Example:
        ```python
        configure_logging("DEBUG")
        ```
    """
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=_CONSOLE, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _print_config(config: ServerConfig) -> None:
    """Render the configuration in a rich table.

    Example:
        ```python
        _print_config(ServerConfig())
        ```
    """
    table = Table(title="Effective Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    for field in dataclasses.fields(config):
        value = getattr(config, field.name)
        shown = "unlimited" if value is None and field.name != "config_path" else str(value)
        table.add_row(field.name, Text(shown))
    _CONSOLE.print(table)


def _serve(config: ServerConfig, skip_preflight: bool) -> int:
    """Run the server until interrupted.

    Example:
        ```python
        code = _serve(ServerConfig(port=0), skip_preflight=True)
        ```
    """
    if not skip_preflight:
        try:
            preflight_validate_toolchain(config.compiler)
        except RuntimeError as exc:
            _CONSOLE.print(Panel.fit(str(exc), title="Preflight failed", style="bold red"))
            return 1
    with RunnerServer(config) as server:
        host, port = server.server_address
        _CONSOLE.print(
            Panel.fit(
                f"Server running on http://{host}:{port}",
                border_style="green",
            )
        )
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            _CONSOLE.print(Panel.fit("Shutting down.", style="bold yellow"))
            server.shutdown()
    return 0


def _run(config: ServerConfig, args: argparse.Namespace) -> int:
    """Compile and run one source file, printing the result panel.

    Example:
        ```python
        code = _run(ServerConfig(), args)
        ```
    """
    source = Path(args.source)
    if not source.is_file():
        _CONSOLE.print(Panel.fit(f"Source file not found: {source}", style="bold red"))
        return 2
    stdin = args.input
    if args.input_file:
        input_file = Path(args.input_file)
        if not input_file.is_file():
            _CONSOLE.print(Panel.fit(f"Input file not found: {input_file}", style="bold red"))
            return 2
        stdin = input_file.read_text(encoding="utf-8")
    try:
        result = ExecutionPipeline(config).execute(source.read_text(encoding="utf-8"), stdin)
    except InternalFailure as exc:
        _CONSOLE.print(Panel.fit(str(exc), title="Internal failure", style="bold red"))
        return 2

    if isinstance(result, CompileFailed):
        _CONSOLE.print(Panel(Text(result.output), title="Compilation failed", border_style="red"))
        return 1
    summary = {"exit_code": result.exit_code, "timed_out": result.timed_out}
    style = "green" if result.exit_code == 0 and not result.timed_out else "yellow"
    _CONSOLE.print(Panel.fit(Pretty(summary), title="Result", border_style=style))
    if result.output:
        _CONSOLE.print(Panel(Text(result.output), title="Output", border_style="cyan"))
    return 0


def _print_snippets(store: SnippetStore) -> None:
    """Render saved snippet names in a rich table.

    Example:
        ```python
        _print_snippets(SnippetStore("user_codes"))
        ```
    """
    table = Table(title=f"Snippets in {store.root}")
    table.add_column("Name", style="cyan")
    table.add_column("Bytes", justify="right")
    for name in store.names():
        table.add_row(name, str((store.root / name).stat().st_size))
    _CONSOLE.print(table)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `scr` CLI command handler.

    Example:
        ```python
        code = main(["config"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.log_level)
    try:
        config = load_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    if args.command == "serve":
        return _serve(config, args.skip_preflight)
    if args.command == "run":
        return _run(config, args)
    if args.command == "config":
        _print_config(config)
        return 0
    if args.command == "snippets":
        _print_snippets(SnippetStore(config.storage_dir))
        return 0

    parser.error("Unhandled command")
    return 2
