"""CLI for hostrelay - channel broker and MCP command dispatcher."""

from __future__ import annotations

import sys

import click

from hostrelay import __version__
from hostrelay.broker import DEFAULT_HOST, DEFAULT_PORT


@click.group()
@click.version_option(version=__version__, prog_name="hostrelay")
def main() -> None:
    """hostrelay - Relay commands from an agent to a host application.

    Run the channel broker, check its status, or start the MCP server
    that sends commands through it.
    """
    pass


@main.command()
@click.option("--port", default=DEFAULT_PORT, envvar="HOSTRELAY_PORT", show_default=True,
              help="Port to run the broker on")
@click.option("--host", default=DEFAULT_HOST, show_default=True, help="Host to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(port: int, host: str, reload: bool) -> None:
    """Start the websocket channel broker."""
    import uvicorn

    click.echo(f"Starting hostrelay broker on {host}:{port}")
    uvicorn.run(
        "hostrelay.broker:app",
        host=host,
        port=port,
        reload=reload,
    )


@main.command()
@click.option(
    "--url", "-u",
    default=f"http://{DEFAULT_HOST}:{DEFAULT_PORT}",
    envvar="HOSTRELAY_STATUS_URL",
    show_default=True,
    help="Base HTTP URL of the broker",
)
@click.option(
    "--raw",
    is_flag=True,
    help="Output raw JSON instead of formatted text",
)
def status(url: str, raw: bool) -> None:
    """Show the broker's channels and connection counts.

    \b
    Example:
        hostrelay status
        hostrelay status --url http://10.0.0.5:3055 --raw
    """
    import httpx

    try:
        response = httpx.get(f"{url.rstrip('/')}/status", timeout=5.0)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        click.echo(f"Broker not reachable at {url}: {e}", err=True)
        sys.exit(1)

    if raw:
        import json
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Broker: {url} ({'running' if data.get('running') else 'stopped'})")
    click.echo(f"Connections: {data.get('connections', 0)} | Errors: {data.get('errors', 0)}")

    channels = data.get("channels") or {}
    if channels:
        click.echo("Channels:")
        for name in sorted(channels):
            click.echo(f"  - {name} ({channels[name]} members)")
    else:
        click.echo("No active channels.")


@main.command()
@click.option(
    "--url", "-u",
    default="ws://localhost:3055",
    envvar="HOSTRELAY_URL",
    show_default=True,
    help="Websocket URL of the broker",
)
@click.option(
    "--channel", "-c",
    default=None,
    envvar="HOSTRELAY_CHANNEL",
    help="Channel to join automatically before the first command",
)
@click.option(
    "--reconnect-interval",
    default=1.0,
    show_default=True,
    help="Initial reconnect delay in seconds",
)
def mcp(url: str, channel: str | None, reconnect_interval: float) -> None:
    """Run the MCP server for Claude integration.

    This command starts the MCP server which exposes join_channel,
    send_command and send_batch to Claude via the Model Context Protocol.

    \b
    Configure in .mcp.json:
        {
            "mcpServers": {
                "hostrelay": {
                    "command": "hostrelay",
                    "args": ["mcp", "--channel", "mychannel"]
                }
            }
        }
    """
    from hostrelay.transport import TransportOptions, status_url_for
    from mcp_hostrelay.server import configure
    from mcp_hostrelay.server import mcp as mcp_server

    options = TransportOptions(initial_delay=reconnect_interval, status_url=status_url_for(url))
    configure(url, channel=channel, options=options)
    mcp_server.run()


if __name__ == "__main__":
    main()
