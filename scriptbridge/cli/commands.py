"""CLI commands for scriptbridge."""

import asyncio
import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape

from scriptbridge import __logo__, __version__

app = typer.Typer(
    name="scriptbridge",
    help=f"{__logo__} scriptbridge - Run untrusted scripts against an explicit host surface",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} scriptbridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """scriptbridge - isolated script execution with a host bridge."""
    pass


def _load_session_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except json.JSONDecodeError as e:
        err_console.print(f"[red]Session file {path} is not valid JSON: {e}[/red]")
        raise typer.Exit(2)
    if not isinstance(data, dict):
        err_console.print(f"[red]Session file {path} must contain a JSON object[/red]")
        raise typer.Exit(2)
    return data


def _save_session_file(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


# ============================================================================
# Run
# ============================================================================


@app.command()
def run(
    script: Path = typer.Argument(..., help="Python script file; its body runs as an async function"),
    timeout_ms: int = typer.Option(None, "--timeout-ms", "-t", min=1, help="Override the configured timeout"),
    session_file: Path = typer.Option(None, "--session-file", "-s", help="JSON file to load and persist session state"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show scriptbridge runtime logs"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Debug logging, including script stderr"),
):
    """Run a script against the diagnostics host methods."""
    from scriptbridge.cli.diagnostics import build_diagnostics_table
    from scriptbridge.cli.shared.logging_utils import configure_console_logging, ensure_rotating_log_file
    from scriptbridge.config.access import get_config
    from scriptbridge.sandbox import ScriptConnection, SessionStore
    from scriptbridge.utils.exceptions import ValidationError

    config = get_config()
    if debug:
        configure_console_logging("DEBUG")
    else:
        configure_console_logging(config.logging.level, enabled=logs)
    if config.logging.file_enabled:
        ensure_rotating_log_file("run", level="DEBUG" if debug else config.logging.level)

    try:
        source = script.read_text(encoding="utf-8")
    except OSError as e:
        err_console.print(f"[red]Cannot read {script}: {e}[/red]")
        raise typer.Exit(2)

    try:
        session = SessionStore(_load_session_file(session_file) if session_file else None)
    except ValidationError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(2)

    def on_progress(text: str) -> None:
        err_console.print(f"[dim]›[/dim] {escape(text)}")

    async def _run():
        async with ScriptConnection(build_diagnostics_table(), config=config, session=session) as connection:
            result = await connection.execute(source, timeout_ms=timeout_ms, on_progress=on_progress)
            # Snapshot before close() clears the session
            return result, connection.session.snapshot()

    result, state = asyncio.run(_run())
    if session_file:
        _save_session_file(session_file, state)

    console.print_json(data=result.to_tool_payload())
    if not result.ok:
        raise typer.Exit(1)


# ============================================================================
# Methods / Version
# ============================================================================


@app.command()
def methods():
    """List the host methods available to scripts run from the CLI."""
    from scriptbridge.cli.diagnostics import build_diagnostics_table

    table = build_diagnostics_table()
    console.print(f"{__logo__} [bold]{len(table)} host methods[/bold]\n")
    console.print(escape(table.describe()))


@app.command()
def version():
    """Show version."""
    console.print(f"{__logo__} scriptbridge v{__version__}")


if __name__ == "__main__":
    app()
