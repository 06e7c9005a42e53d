"""plugin-link command line.

The host launches each plugin process with its connection parameters:

Usage:
    plugin-link --port=<port> --uid=<uid> --dir=<dir>                # Connect and serve
    plugin-link --port=<port> --uid=<uid> --dir=<dir> --plugin mypkg # Load handlers from mypkg
    plugin-link host --port 8765                                     # Run a local host emulator

A plugin module passed with --plugin defines `setup_plugin(plugin)`
(sync or async), which registers handlers before the connection opens.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .errors import ConfigError
from .logging_config import configure_logging
from .plugin import Plugin, create_plugin

USAGE = "Usage: plugin-link --port=<port> --uid=<uid> --dir=<dir>"
SETUP_FUNCTION = "setup_plugin"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group(invoke_without_command=True)
@click.option("--port", type=click.IntRange(1, 65535), help="Host WebSocket port")
@click.option("--uid", "plugin_id", help="Plugin instance id assigned by the host")
@click.option("--dir", "directory", type=click.Path(file_okay=False), help="Plugin directory")
@click.option("--plugin", "plugin_module", help="Module defining setup_plugin(plugin)")
@click.option(
    "--log-level",
    default="INFO",
    envvar="PLUGIN_LINK_LOG_LEVEL",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Log level",
)
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False),
    help="Directory for rotating log files (default: <dir>/logs)",
)
@click.option("--timeout", "call_timeout", default=5.0, type=float, help="Default call timeout")
@click.option("--reconnect-delay", default=5.0, type=float, help="Seconds between reconnects")
@click.pass_context
def main(
    ctx: click.Context,
    port: int | None,
    plugin_id: str | None,
    directory: str | None,
    plugin_module: str | None,
    log_level: str,
    log_dir: str | None,
    call_timeout: float,
    reconnect_delay: float,
) -> None:
    """Run a plugin process connected to its host."""
    if ctx.invoked_subcommand is not None:
        return

    missing = [
        flag
        for flag, value in (("--port", port), ("--uid", plugin_id), ("--dir", directory))
        if not value
    ]
    if missing:
        raise click.UsageError(
            f"Missing required option(s): {', '.join(missing)}\n\n"
            f"{USAGE}, Args: {sys.argv[1:]}"
        )

    plugin_dir = Path(directory or "")
    configure_logging(log_level, Path(log_dir) if log_dir else plugin_dir / "logs")

    try:
        plugin = create_plugin(
            port=port or 0,
            plugin_id=plugin_id or "",
            directory=plugin_dir,
            call_timeout=call_timeout,
            reconnect_delay=reconnect_delay,
        )
    except ConfigError as e:
        raise click.UsageError(f"{e}\n\n{USAGE}") from e

    setup = _load_setup(plugin_module) if plugin_module else None
    _run_plugin(plugin, setup)


@main.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8765, type=click.IntRange(0, 65535), help="Port to bind to")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Log level",
)
def host(host: str, port: int, log_level: str) -> None:
    """Run a local host emulator that plugins can connect to."""
    import uvicorn

    from .host import create_host_app

    configure_logging(log_level)
    click.echo(f"Starting plugin host on ws://{host}:{port}", err=True)
    click.echo("Press Ctrl+C to stop", err=True)

    uvicorn.run(create_host_app(), host=host, port=port, log_level=log_level.lower())


def _load_setup(module_name: str) -> Callable[[Plugin], Any]:
    """Import a plugin module and return its setup function."""
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        click.echo(f"Failed to import module {module_name}: {e}", err=True)
        sys.exit(1)

    setup = getattr(module, SETUP_FUNCTION, None)
    if not callable(setup):
        click.echo(f"Module {module_name} has no {SETUP_FUNCTION}(plugin) function", err=True)
        sys.exit(1)
    return setup


def _run_plugin(plugin: Plugin, setup: Callable[[Plugin], Any] | None) -> None:
    """Run the plugin until it is stopped or interrupted."""

    async def serve() -> None:
        if setup is not None:
            result = setup(plugin)
            if inspect.isawaitable(result):
                await result
        await plugin.run()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        click.echo("Interrupted, shutting down", err=True)


if __name__ == "__main__":
    main()
