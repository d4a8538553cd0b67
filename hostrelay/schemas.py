"""Pydantic schemas for hostrelay wire envelopes and response contracts."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from hostrelay.errors import ProtocolError


class EnvelopeType(str, Enum):
    """Discriminant values carried in every envelope's ``type`` field."""

    JOIN = "join"
    MESSAGE = "message"
    PROGRESS_UPDATE = "progress_update"
    SYSTEM = "system"
    ERROR = "error"


class ProgressStatus(str, Enum):
    """Lifecycle states reported by a host for a long-running command."""

    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


# --- Message payloads ---


class CommandMessage(BaseModel):
    """Inner payload of a ``message`` envelope.

    Requests carry ``command``/``params``; host responses carry ``result``
    or ``error`` under the same correlation id.
    """

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    command: str | None = None
    params: dict[str, Any] | None = None
    result: Any = None
    error: Any = None

    @property
    def is_request(self) -> bool:
        return self.command is not None

    @property
    def is_terminal(self) -> bool:
        """True when the host has answered with a result or an error."""
        return "result" in self.model_fields_set or "error" in self.model_fields_set


class ProgressUpdate(BaseModel):
    """Progress report emitted by the host for a pending command."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    command_id: str = Field(..., alias="commandId")
    command_type: str | None = Field(default=None, alias="commandType")
    status: ProgressStatus
    progress: float = Field(default=0, ge=0, le=100)
    total_items: int | None = Field(default=None, alias="totalItems")
    processed_items: int | None = Field(default=None, alias="processedItems")
    message: str = ""
    current_chunk: int | None = Field(default=None, alias="currentChunk")
    total_chunks: int | None = Field(default=None, alias="totalChunks")
    chunk_size: int | None = Field(default=None, alias="chunkSize")
    payload: dict[str, Any] | None = None
    timestamp: int | None = None

    @field_validator("message", mode="before")
    @classmethod
    def _blank_message(cls, value: Any) -> Any:
        return "" if value is None else value


class ProgressMessage(BaseModel):
    """Inner payload of a ``progress_update`` envelope.

    ``data`` stays a raw dict when it does not validate as a ProgressUpdate,
    so the update still counts as activity for its correlation id.
    """

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    type: str | None = None
    data: Union[ProgressUpdate, dict[str, Any], None] = Field(default=None, union_mode="left_to_right")


# --- Envelopes ---


class JoinEnvelope(BaseModel):
    """Request to join a channel on the broker."""

    model_config = ConfigDict(extra="allow")

    type: Literal["join"] = "join"
    id: str | None = None
    channel: str


class MessageEnvelope(BaseModel):
    """Command request or host response relayed within a channel."""

    model_config = ConfigDict(extra="allow")

    type: Literal["message"] = "message"
    id: str | None = None
    channel: str | None = None
    message: CommandMessage

    @property
    def correlation_id(self) -> str | None:
        return self.message.id or self.id


class ProgressEnvelope(BaseModel):
    """Progress report relayed from the host back to the requester."""

    model_config = ConfigDict(extra="allow")

    type: Literal["progress_update"] = "progress_update"
    id: str | None = None
    channel: str | None = None
    message: ProgressMessage

    @property
    def correlation_id(self) -> str | None:
        data = self.message.data
        if isinstance(data, ProgressUpdate):
            return self.id or self.message.id or data.command_id
        return self.id or self.message.id or (data or {}).get("commandId")


class SystemEnvelope(BaseModel):
    """Broker-originated notice: join confirmations and roster changes."""

    model_config = ConfigDict(extra="allow")

    type: Literal["system"] = "system"
    channel: str | None = None
    message: Any = None


class ErrorEnvelope(BaseModel):
    """Broker-originated structured error."""

    model_config = ConfigDict(extra="allow")

    type: Literal["error"] = "error"
    message: Any = None
    code: str | None = None
    channel: str | None = None


Envelope = Annotated[
    Union[JoinEnvelope, MessageEnvelope, ProgressEnvelope, SystemEnvelope, ErrorEnvelope],
    Field(discriminator="type"),
]

_envelope_adapter: TypeAdapter[Envelope] = TypeAdapter(Envelope)


def envelope_type(raw: Any) -> EnvelopeType:
    """Read the discriminant of a raw frame without validating the rest.

    Raises:
        ProtocolError: If the frame is not an object or the type is unknown
    """
    if not isinstance(raw, dict):
        raise ProtocolError(f"Envelope must be a JSON object, got {type(raw).__name__}")
    try:
        return EnvelopeType(raw.get("type"))
    except ValueError:
        raise ProtocolError(f"Unknown envelope type: {raw.get('type')!r}") from None


def decode_envelope(raw: Any) -> Envelope:
    """Decode a raw JSON object into its typed envelope.

    Args:
        raw: Parsed JSON value received from the socket

    Returns:
        One of the envelope models, selected by ``type``

    Raises:
        ProtocolError: If the discriminant is unknown or the shape is invalid
    """
    envelope_type(raw)
    try:
        return _envelope_adapter.validate_python(raw)
    except ValidationError as e:
        raise ProtocolError(f"Malformed {raw.get('type')} envelope: {e.error_count()} validation error(s)") from e


# --- Response Schemas ---


class StatusResponse(BaseModel):
    """Broker status snapshot served at ``GET /status``."""

    running: bool = True
    channels: dict[str, int] = Field(default_factory=dict, description="Member count per channel")
    connections: int = 0
    errors: int = 0


class ErrorResponse(BaseModel):
    """Error surfaced to callers as a value."""

    detail: str
    error_code: str | None = None
    command_id: str | None = None
    command: str | None = None
    recoverable: bool = False


class BatchOutcome(BaseModel):
    """Outcome of one item in a batch: a result or an error message."""

    item: Any
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
