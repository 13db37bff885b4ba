"""Click CLI for the agent bridge."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
import uvicorn

from agent_bridge import __version__
from agent_bridge.config import BridgeConfig


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Agent Bridge - drive a stream-json agent CLI through an HTTP session API."""


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default: 127.0.0.1)")
@click.option("--port", default=None, type=int, help="Port to bind to (default: 4096)")
@click.option("--db", "db_path", default=None, help="Path to SQLite database")
@click.option("--agent-binary", default=None, help="Agent CLI executable (default: claude)")
@click.option("--permission-mode", default=None, help="Value for --permission-mode")
@click.option("--cwd", "working_directory", default=None, help="Default session directory")
@click.option("--timeout", default=None, type=float, help="Seconds before a run is killed")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Verbose output")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Suppress terminal output")
def start(
    host: str | None,
    port: int | None,
    db_path: str | None,
    agent_binary: str | None,
    permission_mode: str | None,
    working_directory: str | None,
    timeout: float | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """Start the bridge server."""
    # Build config from CLI overrides (env vars handled by pydantic-settings)
    overrides: dict[str, Any] = {}
    if host is not None:
        overrides["host"] = host
    if port is not None:
        overrides["port"] = port
    if db_path is not None:
        overrides["db_path"] = db_path
    if agent_binary is not None:
        overrides["agent_binary"] = agent_binary
    if permission_mode is not None:
        overrides["permission_mode"] = permission_mode
    if working_directory is not None:
        overrides["working_directory"] = working_directory
    if timeout is not None:
        overrides["turn_timeout_seconds"] = timeout
    if verbose:
        overrides["verbose"] = True
        overrides["log_level"] = "DEBUG"
    if quiet:
        overrides["quiet"] = True

    config = BridgeConfig(**overrides)

    from agent_bridge.display.terminal import TerminalDisplay
    from agent_bridge.logging_config import setup_logging
    from agent_bridge.server import create_app

    setup_logging(config.log_level, quiet=config.quiet)
    display = TerminalDisplay(config)

    if not config.quiet:
        display.console.print(
            f"[bold]Agent Bridge[/bold] starting on "
            f"[green]http://{config.host}:{config.port}[/green]"
        )
        display.console.print(f"  Database: {config.db_path}")
        display.console.print(f"  Agent: {config.agent_binary} ({config.permission_mode})")
        display.console.print(f"  Turn timeout: {config.turn_timeout_seconds:.0f}s")
        display.console.print()

    app = create_app(config, on_event=None if config.quiet else display)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="warning" if not verbose else "info",
    )


def _offline_config(db_path: str | None) -> BridgeConfig:
    overrides: dict[str, Any] = {}
    if db_path is not None:
        overrides["db_path"] = db_path
    return BridgeConfig(**overrides)


@cli.command()
@click.option("--db", "db_path", default=None, help="Path to SQLite database")
def sessions(db_path: str | None) -> None:
    """List stored sessions."""
    asyncio.run(_sessions(db_path))


async def _sessions(db_path: str | None) -> None:
    config = _offline_config(db_path)

    from agent_bridge.display.terminal import TerminalDisplay
    from agent_bridge.storage.store import SessionStore

    display = TerminalDisplay(config)
    store = SessionStore(config)
    await store.initialize()

    try:
        session_list = store.list()
        if not session_list:
            display.console.print("[dim]No sessions found.[/dim]")
            return
        display.display_sessions_table(session_list)
    finally:
        await store.close()


@cli.command()
@click.argument("session_id")
@click.option("--db", "db_path", default=None, help="Path to SQLite database")
def messages(session_id: str, db_path: str | None) -> None:
    """Print a session's message history."""
    asyncio.run(_messages(session_id, db_path))


async def _messages(session_id: str, db_path: str | None) -> None:
    config = _offline_config(db_path)

    from agent_bridge.display.terminal import TerminalDisplay
    from agent_bridge.storage.store import SessionStore

    display = TerminalDisplay(config)
    store = SessionStore(config)
    await store.initialize()

    try:
        session = store.get(session_id)
        if session is None:
            raise click.ClickException(f"Session not found: {session_id}")
        display.display_messages(session, store.list_messages(session_id))
    finally:
        await store.close()


@cli.command()
@click.argument("session_id")
@click.option("--db", "db_path", default=None, help="Path to SQLite database")
@click.option("--output", "-o", default=None, help="Output file (default: stdout)")
@click.option("--format", "fmt", default="json", type=click.Choice(["json", "jsonl"]))
def export(session_id: str, db_path: str | None, output: str | None, fmt: str) -> None:
    """Export a session and its messages as JSON or JSONL."""
    asyncio.run(_export(session_id, db_path, output, fmt))


async def _export(session_id: str, db_path: str | None, output: str | None, fmt: str) -> None:
    config = _offline_config(db_path)

    from agent_bridge.storage.store import SessionStore

    store = SessionStore(config)
    await store.initialize()

    try:
        session = store.get(session_id)
        if session is None:
            raise click.ClickException(f"Session not found: {session_id}")
        data = [m.model_dump(mode="json") for m in store.list_messages(session_id)]

        if fmt == "json":
            text = json.dumps(
                {"session": session.model_dump(mode="json"), "messages": data},
                indent=2,
                ensure_ascii=False,
            )
        else:
            text = "\n".join(json.dumps(item, ensure_ascii=False) for item in data)

        if output:
            with open(output, "w", encoding="utf-8") as f:
                f.write(text)
            click.echo(f"Exported {len(data)} messages from session '{session_id}' to {output}")
        else:
            click.echo(text)
    finally:
        await store.close()


@cli.command()
@click.argument("session_id")
@click.option("--db", "db_path", default=None, help="Path to SQLite database")
def delete(session_id: str, db_path: str | None) -> None:
    """Delete a session and its messages."""
    asyncio.run(_delete(session_id, db_path))


async def _delete(session_id: str, db_path: str | None) -> None:
    config = _offline_config(db_path)

    from agent_bridge.storage.store import SessionStore

    store = SessionStore(config)
    await store.initialize()

    try:
        if not await store.delete(session_id):
            raise click.ClickException(f"Session not found: {session_id}")
        click.echo(f"Deleted session '{session_id}'")
    finally:
        await store.close()
