"""Progress protocol helpers shared by hosts, the dispatcher and tools."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any

from hostrelay.schemas import ProgressStatus, ProgressUpdate


def percent(processed: int, total: int) -> float:
    """Completion percentage, clamped to 0..100. An empty batch is complete."""
    if total <= 0:
        return 100.0
    return max(0.0, min(100.0, processed * 100.0 / total))


def describe_progress(update: ProgressUpdate) -> str:
    """Render a progress update as one log line."""
    text = f"{update.status.value} {update.progress:.0f}%"
    if update.total_items:
        text += f" ({update.processed_items or 0}/{update.total_items} items)"
    if update.total_chunks:
        text += f" [chunk {update.current_chunk}/{update.total_chunks}]"
    if update.message:
        text += f" - {update.message}"
    return text


def build_progress_envelope(
    command_id: str,
    status: ProgressStatus | str,
    progress: float,
    *,
    command_type: str | None = None,
    total_items: int | None = None,
    processed_items: int | None = None,
    message: str = "",
    channel: str | None = None,
    current_chunk: int | None = None,
    total_chunks: int | None = None,
    chunk_size: int | None = None,
    payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the ``progress_update`` envelope a host sends for a command.

    Chunk metadata is only included when both ``current_chunk`` and
    ``total_chunks`` are given.

    Raises:
        pydantic.ValidationError: If status or progress are out of range
    """
    data: dict[str, Any] = {
        "type": "command_progress",
        "commandId": command_id,
        "commandType": command_type,
        "status": ProgressStatus(status).value,
        "progress": progress,
        "totalItems": total_items,
        "processedItems": processed_items,
        "message": message,
        "timestamp": int(time.time() * 1000),
    }
    if current_chunk is not None and total_chunks is not None:
        data["currentChunk"] = current_chunk
        data["totalChunks"] = total_chunks
        data["chunkSize"] = chunk_size
    if payload is not None:
        data["payload"] = payload

    ProgressUpdate.model_validate(data)

    envelope: dict[str, Any] = {
        "id": command_id,
        "type": "progress_update",
        "message": {"id": command_id, "type": "progress_update", "data": data},
    }
    if channel:
        envelope["channel"] = channel
    return envelope


def build_result_envelope(command_id: str, result: Any, channel: str | None = None) -> dict[str, Any]:
    """Build the terminal success response for a command."""
    envelope: dict[str, Any] = {
        "id": command_id,
        "type": "message",
        "message": {"id": command_id, "result": result},
    }
    if channel:
        envelope["channel"] = channel
    return envelope


def build_error_envelope(command_id: str, error: str, channel: str | None = None) -> dict[str, Any]:
    """Build the terminal failure response for a command."""
    envelope: dict[str, Any] = {
        "id": command_id,
        "type": "message",
        "message": {"id": command_id, "error": error},
    }
    if channel:
        envelope["channel"] = channel
    return envelope


class ProgressLog:
    """Keeps the latest progress update per command id.

    Register an instance with ``DispatcherClient.add_progress_listener``.
    Oldest entries are evicted once ``max_entries`` is exceeded.
    """

    def __init__(self, max_entries: int = 100):
        self.max_entries = max_entries
        self._latest: OrderedDict[str, ProgressUpdate] = OrderedDict()

    def __call__(self, update: ProgressUpdate) -> None:
        self._latest.pop(update.command_id, None)
        self._latest[update.command_id] = update
        while len(self._latest) > self.max_entries:
            self._latest.popitem(last=False)

    def get(self, command_id: str) -> ProgressUpdate | None:
        return self._latest.get(command_id)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Latest updates keyed by command id, in wire (camelCase) form."""
        return {
            command_id: update.model_dump(by_alias=True, exclude_none=True, mode="json")
            for command_id, update in self._latest.items()
        }
