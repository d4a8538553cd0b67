"""MCP server exposing hostrelay command dispatch to Claude."""

import logging

import httpx
from mcp.server.fastmcp import FastMCP

from hostrelay.batch import run_batch
from hostrelay.dispatcher import DispatcherClient
from hostrelay.errors import ChannelJoinError, NotConnectedError, RelayError, to_error_response
from hostrelay.progress import ProgressLog, percent
from hostrelay.transport import ResilientTransport, TransportOptions, status_url_for

logger = logging.getLogger(__name__)

mcp = FastMCP("hostrelay")
BROKER_URL = "ws://localhost:3055"

# How long a tool waits for the broker when no connection is open yet
CONNECT_WAIT = 5.0  # seconds

_client: DispatcherClient | None = None
_default_channel: str | None = None
_progress_log = ProgressLog()


def configure(
    url: str = BROKER_URL,
    *,
    channel: str | None = None,
    options: TransportOptions | None = None,
) -> DispatcherClient:
    """Create the process-wide dispatcher used by every tool.

    The connection itself is opened lazily by the first tool call.
    """
    global _client, _default_channel

    options = options or TransportOptions(status_url=status_url_for(url))
    _client = DispatcherClient(ResilientTransport(url, options))
    _client.add_progress_listener(_progress_log)
    _default_channel = channel
    logger.info(f"Configured broker connection: {url} (channel: {channel or 'none'})")
    return _client


def get_client() -> DispatcherClient:
    """Get or create the dispatcher instance."""
    if _client is None:
        return configure()
    return _client


async def _ensure_connected(client: DispatcherClient) -> None:
    if client.is_connected:
        return
    client.transport.connect()
    if not await client.transport.wait_open(CONNECT_WAIT):
        raise NotConnectedError(f"Could not reach broker at {client.transport.url}")


async def _ensure_joined(client: DispatcherClient) -> None:
    await _ensure_connected(client)
    if client.current_channel is None and _default_channel:
        logger.warning(f"No active channel, joining default channel {_default_channel}")
        await client.join(_default_channel)


def _error(exc: Exception, tool: str, command: str | None = None) -> dict:
    response = to_error_response(exc)
    logger.error(
        f"[{tool}][{response.command or command or '-'}] {response.error_code}: "
        f"{response.detail} | command_id: {response.command_id}"
    )
    return {"error": response.model_dump()}


@mcp.tool()
async def join_channel(channel: str = "") -> dict:
    """Join the broker channel shared with the host. Required before sending commands.

    Args:
        channel: Channel name displayed by the host plugin
    """
    client = get_client()
    if not channel:
        return _error(ChannelJoinError("Please provide a channel name to join"), "join_channel")
    if client.current_channel == channel:
        return {"channel": channel, "joined": True, "message": f"Already joined channel: {channel}"}

    try:
        await _ensure_connected(client)
        await client.join(channel)
    except RelayError as e:
        return _error(e, "join_channel")
    return {"channel": channel, "joined": True, "message": f"Successfully joined channel: {channel}"}


@mcp.tool()
async def send_command(command: str, params: dict | None = None, timeout: float = 30.0) -> dict:
    """Send one command to the host and wait for its result.

    Long operations stay alive while the host keeps reporting progress.

    Args:
        command: Host command name, e.g. "get_document_info"
        params: Command parameters, passed through untouched
        timeout: Seconds of host inactivity before the command fails
    """
    client = get_client()
    try:
        await _ensure_joined(client)
        result = await client.execute(command, params or {}, timeout=timeout)
    except RelayError as e:
        return _error(e, "send_command", command)
    return {"command": command, "result": result}


@mcp.tool()
async def send_batch(
    command: str,
    items: list[dict],
    chunk_size: int = 20,
    concurrency: int = 5,
    timeout: float = 30.0,
) -> dict:
    """Run the same command once per parameter set; failures do not stop the batch.

    Args:
        command: Host command name applied to every item
        items: One params object per invocation
        chunk_size: Items per sequential chunk
        concurrency: Commands in flight within a chunk
        timeout: Per-command inactivity timeout in seconds
    """
    client = get_client()
    try:
        await _ensure_joined(client)
    except RelayError as e:
        return _error(e, "send_batch", command)

    async def _operation(params: dict):
        return await client.execute(command, params, timeout=timeout)

    def _report(processed: int, total: int) -> None:
        logger.info(f"Batch {command}: {processed}/{total} ({percent(processed, total):.0f}%)")

    try:
        outcomes = await run_batch(
            items,
            _operation,
            chunk_size=chunk_size,
            concurrency=concurrency,
            on_progress=_report,
        )
    except ValueError as e:
        return _error(e, "send_batch", command)

    failed = sum(1 for outcome in outcomes if not outcome.ok)
    return {
        "command": command,
        "total": len(outcomes),
        "succeeded": len(outcomes) - failed,
        "failed": failed,
        "outcomes": [outcome.model_dump() for outcome in outcomes],
    }


@mcp.tool()
async def relay_status() -> dict:
    """Report local connection state and the broker's /status snapshot."""
    client = get_client()
    local = {
        "connected": client.is_connected,
        "state": client.transport.state.value,
        "channel": client.current_channel,
        "pending": client.pending_count,
    }

    status_url = client.transport.options.status_url or status_url_for(client.transport.url)
    try:
        async with httpx.AsyncClient(timeout=5.0) as http:
            r = await http.get(status_url)
            r.raise_for_status()
            broker = r.json()
    except (httpx.HTTPError, ValueError) as e:
        broker = {"running": False, "detail": str(e)}

    return {"client": local, "broker": broker}


@mcp.tool()
async def command_progress() -> dict:
    """Latest progress reported by the host for recent commands, keyed by command id."""
    return _progress_log.snapshot()


if __name__ == "__main__":
    mcp.run()
