"""Pydantic models for file transfer."""

import math
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class ProtocolError(ValueError):
    """A control message that cannot be decoded."""


class TransferState(str, Enum):
    """All possible states for a transfer task."""
    CREATED = "created"
    SENDING_META = "sending_meta"
    SENDING_DATA = "sending_data"
    AWAITING_REMOTE_PROGRESS = "awaiting_remote_progress"
    AWAITING_DATA = "awaiting_data"
    RECEIVING = "receiving"
    FINISHED = "finished"
    FAILED = "failed"


class TransferDirection(str, Enum):
    SEND = "send"
    RECV = "recv"


class TransferMeta(BaseModel):
    """Announced by the sender before any file data."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    size: int = Field(ge=0)


class TransferProgress(BaseModel):
    """Bytes received so far and the last sampled rate (bytes/sec)."""
    model_config = ConfigDict(populate_by_name=True)

    received_size: int = Field(default=0, ge=0, alias="receivedSize")
    rate: float = 0.0


class TransferInfo(BaseModel):
    """Full state of a single transfer task, exposed to listeners."""
    direction: TransferDirection
    state: TransferState = TransferState.CREATED
    meta: TransferMeta
    progress: TransferProgress = Field(default_factory=TransferProgress)
    error_message: str | None = None

    @property
    def id(self) -> str:
        return self.meta.id

    @property
    def progress_percent(self) -> float:
        if self.meta.size == 0:
            return 100.0
        return self.progress.received_size / self.meta.size * 100


# --- Data channel control messages ---

class MetaMessage(BaseModel):
    type: Literal["META"] = "META"
    data: TransferMeta


class ProgressMessage(BaseModel):
    type: Literal["PROGRESS"] = "PROGRESS"
    data: TransferProgress


ControlMessage = Annotated[
    Union[MetaMessage, ProgressMessage], Field(discriminator="type")
]
_control_adapter = TypeAdapter(ControlMessage)


def encode_control(message: MetaMessage | ProgressMessage) -> str:
    """Serialise a control message to its JSON text frame."""
    return message.model_dump_json(by_alias=True)


def decode_control(text: str) -> MetaMessage | ProgressMessage:
    """Parse a JSON text frame into a control message."""
    try:
        return _control_adapter.validate_json(text)
    except ValidationError as e:
        raise ProtocolError(f"Invalid control message: {e}") from e


def chunk_payload(data: bytes, chunk_size: int) -> list[bytes]:
    """Slice data into ceil(len/chunk_size) chunks up front."""
    count = math.ceil(len(data) / chunk_size)
    return [data[i * chunk_size:(i + 1) * chunk_size] for i in range(count)]
