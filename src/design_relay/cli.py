"""design-relay CLI.

Usage:
    design-relay serve                         # Run the relay server
    design-relay serve --port 9000 --reload    # Custom port, auto-reload
    design-relay health                        # Check relay health
    design-relay status                        # Show clients and in-flight work

    design-relay exec node-creation create-rectangle --params '{"width": 100}'
    design-relay consume --handlers-module myapp.handlers

    design-relay config                        # Show effective configuration
"""

from __future__ import annotations

import asyncio
import dataclasses
import importlib
import json
import logging
import os
import sys
from typing import Any

import click
import httpx

from . import __version__
from .caller import RelayCaller
from .config import (
    DEFAULT_BASE_URL,
    DEFAULT_CONSUMER_TYPE,
    DEFAULT_HOST,
    DEFAULT_PORT,
    ENV_PREFIX,
    CallerConfig,
    ConsumerConfig,
    ServerConfig,
)
from .consumer import CommandDispatcher, ConsumerClient
from .errors import RelayError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

# Output format options
FORMAT_TABLE = "table"
FORMAT_JSON = "json"


def _setup_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT, stream=sys.stderr)


@click.group()
@click.version_option(__version__, prog_name="design-relay")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    help="Logging level",
)
def main(log_level: str) -> None:
    """design-relay - command relay for outbound-only design-tool extensions."""
    _setup_logging(log_level)


# =============================================================================
# Server
# =============================================================================


@main.command()
@click.option("--host", default=DEFAULT_HOST, help="Host to bind to")
@click.option("--port", default=DEFAULT_PORT, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.option("--command-timeout", type=float, help="Blocking submit deadline in seconds")
def serve(host: str, port: int, reload: bool, command_timeout: float | None) -> None:
    """Run the relay server."""
    import uvicorn

    # The app factory reads its settings from the environment
    os.environ[f"{ENV_PREFIX}HOST"] = host
    os.environ[f"{ENV_PREFIX}PORT"] = str(port)
    if command_timeout is not None:
        os.environ[f"{ENV_PREFIX}COMMAND_TIMEOUT"] = str(command_timeout)

    click.echo(f"Starting design relay on http://{host}:{port}", err=True)
    click.echo("Press Ctrl+C to stop", err=True)

    uvicorn.run(
        "design_relay.server.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


@main.command()
@click.option("--url", default=DEFAULT_BASE_URL, help="Relay URL")
def health(url: str) -> None:
    """Check relay health."""

    async def check() -> None:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(f"{url}/health")
                if response.status_code == 200:
                    click.echo(f"Relay is healthy: {response.json()}")
                else:
                    click.echo(f"Relay returned {response.status_code}", err=True)
                    sys.exit(1)
        except httpx.ConnectError:
            click.echo(f"Cannot connect to relay at {url}", err=True)
            sys.exit(1)

    asyncio.run(check())


@main.command()
@click.option("--url", default=DEFAULT_BASE_URL, help="Relay URL")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
def status(url: str, output_format: str) -> None:
    """Show registered clients and in-flight commands."""

    async def fetch() -> dict[str, Any]:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{url}/status")
            response.raise_for_status()
            return response.json()

    try:
        data = asyncio.run(fetch())
    except httpx.HTTPError as e:
        click.echo(f"Cannot read status from {url}: {e}", err=True)
        sys.exit(1)

    if output_format == FORMAT_JSON:
        click.echo(json.dumps(data, indent=2))
        return

    clients = data.get("clients", [])
    click.echo(f"Consumer connected: {data.get('consumer_connected', False)}")
    click.echo(f"Pending commands:   {data.get('pending_commands', 0)}")
    click.echo(f"Orphan responses:   {data.get('orphan_responses', 0)}")
    click.echo("")

    if not clients:
        click.echo("No clients registered.")
        return

    click.echo(f"{'Client ID':<20} {'Type':<15} {'Connected':<10} {'Alive':<6} {'Queued':>6}")
    click.echo("-" * 61)
    for c in clients:
        click.echo(
            f"{c.get('clientId', '?'):<20} {c.get('type', '?'):<15} "
            f"{str(c.get('connected', False)):<10} {str(c.get('alive', False)):<6} {c.get('queued', 0):>6}"
        )


# =============================================================================
# Caller / Consumer
# =============================================================================


@main.command("exec")
@click.argument("category")
@click.argument("operation")
@click.option("--params", "params_json", default="{}", help="Command parameters as JSON")
@click.option("--target", default=DEFAULT_CONSUMER_TYPE, help="Consumer type to address")
@click.option("--timeout", type=float, help="Deadline in seconds (default depends on category)")
@click.option("--no-wait", is_flag=True, help="Queue the command and return its id without waiting")
@click.option("--url", default=DEFAULT_BASE_URL, help="Relay URL")
def exec_command(
    category: str,
    operation: str,
    params_json: str,
    target: str,
    timeout: float | None,
    no_wait: bool,
    url: str,
) -> None:
    """Send one command to a consumer and print its result.

    Examples:

        design-relay exec node-creation create-rectangle --params '{"width": 100, "height": 50}'

        design-relay exec selection-navigation get-selection --timeout 3
    """
    try:
        parameters = json.loads(params_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--params") from e
    if not isinstance(parameters, dict):
        raise click.BadParameter("Parameters must be a JSON object", param_hint="--params")

    config = dataclasses.replace(CallerConfig.from_env(), base_url=url, target_type=target)

    async def run() -> Any:
        async with RelayCaller(config) as caller:
            if no_wait:
                return {"queued": True, "id": await caller.enqueue(category, operation, parameters)}
            result = await caller.execute(category, operation, parameters, timeout=timeout)
            return result.data

    try:
        data = asyncio.run(run())
    except RelayError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(data, indent=2, default=str))


@main.command()
@click.option("--url", default=DEFAULT_BASE_URL, help="Relay URL")
@click.option("--type", "client_type", default=DEFAULT_CONSUMER_TYPE, help="Consumer type to register as")
@click.option(
    "--handlers-module",
    help="Python module exposing register_handlers(dispatcher) (e.g., myapp.handlers)",
)
def consume(url: str, client_type: str, handlers_module: str | None) -> None:
    """Run a polling consumer that dispatches commands to local handlers."""
    dispatcher = CommandDispatcher()
    if handlers_module:
        _load_handlers(handlers_module, dispatcher)

    config = dataclasses.replace(ConsumerConfig.from_env(), base_url=url, client_type=client_type)

    def on_give_up() -> None:
        click.echo("Reconnect attempts exhausted; restart the consumer to resume", err=True)

    client = ConsumerClient(config, dispatcher=dispatcher, on_give_up=on_give_up)
    click.echo(f"Consuming commands from {url} as {client_type}", err=True)

    try:
        asyncio.run(client.run_forever())
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)


def _load_handlers(module_name: str, dispatcher: CommandDispatcher) -> None:
    """Import a handlers module and let it fill the dispatch table."""
    click.echo(f"Loading handlers from module {module_name}", err=True)
    try:
        mod = importlib.import_module(module_name)
    except ImportError as e:
        click.echo(f"Failed to import module {module_name}: {e}", err=True)
        sys.exit(1)

    setup_fn = getattr(mod, "register_handlers", None)
    if setup_fn is None:
        click.echo(f"Module {module_name} has no register_handlers(dispatcher)", err=True)
        sys.exit(1)
    setup_fn(dispatcher)

    stats = dispatcher.stats()
    click.echo(f"  {stats['handlers']} handlers registered", err=True)


# =============================================================================
# Config
# =============================================================================


@main.command("config")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def show_config(output_json: bool) -> None:
    """Show the effective configuration (defaults plus DESIGN_RELAY_* overrides)."""
    config = {
        "server": dataclasses.asdict(ServerConfig.from_env()),
        "caller": dataclasses.asdict(CallerConfig.from_env()),
        "consumer": dataclasses.asdict(ConsumerConfig.from_env()),
    }

    if output_json:
        click.echo(json.dumps(config, indent=2))
        return

    for section, values in config.items():
        click.echo(f"[{section}]")
        for key, value in values.items():
            click.echo(f"  {key:<24} {value}")


if __name__ == "__main__":
    main()
