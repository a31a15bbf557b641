"""Models for the rendezvous relay."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel


class RelayEvent(str, Enum):
    """Event names on the relay socket."""
    PIN = "pin"
    OFFER = "offer"
    ANSWER = "answer"
    ICE = "ice"
    LEAVE = "leave"
    ACK = "ack"


class DisconnectReason(str, Enum):
    LEAVE = "leave"  # client left on purpose
    TRANSPORT = "transport"  # socket dropped


class RelayEnvelope(BaseModel):
    """JSON frame exchanged with relay clients."""
    event: RelayEvent
    data: Any = None
    ack: int | None = None
    error: str | None = None


class RelayConnection(Protocol):
    """One client socket as seen by the relay."""

    conn_id: str
    pin: int | None
    is_producer: bool

    async def send(self, event: RelayEvent, data: Any) -> None: ...

    async def close(self, code: int) -> None: ...


@dataclass
class Session:
    """A producer and, once it joins, a consumer sharing one pin."""
    pin: int
    producer: RelayConnection
    consumer: RelayConnection | None = None

    def peer_of(self, conn: RelayConnection) -> RelayConnection | None:
        if conn is self.producer:
            return self.consumer
        if conn is self.consumer:
            return self.producer
        return None
