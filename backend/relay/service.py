"""
Rendezvous relay.

Pairs a producer and a consumer by pin and forwards the opaque
offer/answer/ice negotiation messages between the two sockets.
"""

import logging
from typing import Any

from config import CLOSE_PEER_LEFT
from relay.models import DisconnectReason, RelayConnection, RelayEvent, Session
from relay.pin import PinRegistry

logger = logging.getLogger(__name__)


class JoinError(Exception):
    """Raised when a connection cannot join the requested session."""


class RendezvousRelay:
    """Owns the pin registry and the pin -> session map."""

    def __init__(self, registry: PinRegistry | None = None) -> None:
        self._registry = registry or PinRegistry()
        self._sessions: dict[int, Session] = {}

    @property
    def registry(self) -> PinRegistry:
        return self._registry

    def session_count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def get_session(self, pin: int) -> Session | None:
        return self._sessions.get(pin)

    async def join(self, conn: RelayConnection, pin: int | None = None) -> int:
        """
        Join a session and return the resolved pin.

        Without a pin the connection becomes the producer of a freshly
        allocated pin; with one it becomes that session's consumer.
        """
        if conn.pin is not None:
            raise JoinError(f"Connection already joined pin {conn.pin}")

        if pin is None:
            pin = self._registry.allocate()
            self._sessions[pin] = Session(pin=pin, producer=conn)
            conn.pin = pin
            conn.is_producer = True
            logger.info(f"Session {pin} opened by producer {conn.conn_id}")
            return pin

        session = self._sessions.get(pin)
        if session is None:
            raise JoinError(f"No session for pin {pin}")
        if session.consumer is not None:
            raise JoinError(f"Pin {pin} already has a consumer")

        session.consumer = conn
        conn.pin = pin
        conn.is_producer = False
        logger.info(f"Consumer {conn.conn_id} joined session {pin}")
        return pin

    async def relay(self, conn: RelayConnection, kind: RelayEvent, payload: Any) -> bool:
        """Forward a negotiation message to the other party of the session."""
        session = self._sessions.get(conn.pin) if conn.pin is not None else None
        if session is None:
            logger.warning(f"Dropping {kind.value} from unjoined connection {conn.conn_id}")
            return False

        # Offers flow consumer -> producer, answers producer -> consumer
        if kind == RelayEvent.OFFER and conn.is_producer:
            logger.warning(f"Dropping offer sent by producer of {session.pin}")
            return False
        if kind == RelayEvent.ANSWER and not conn.is_producer:
            logger.warning(f"Dropping answer sent by consumer of {session.pin}")
            return False

        peer = session.peer_of(conn)
        if peer is None:
            logger.debug(f"No peer yet for {kind.value} in session {session.pin}")
            return False

        logger.debug(f"Relaying {kind.value} in session {session.pin}")
        try:
            await peer.send(kind, payload)
        except Exception as e:
            logger.error(f"Failed to relay {kind.value} to {peer.conn_id}: {e}")
            return False
        return True

    async def disconnect(self, conn: RelayConnection, reason: DisconnectReason) -> None:
        """Tear down whatever the disconnecting connection owned."""
        session = self._sessions.get(conn.pin) if conn.pin is not None else None
        if session is None:
            return

        if conn is session.producer:
            consumer = session.consumer
            self._sessions.pop(session.pin, None)
            self._registry.free(session.pin)
            logger.info(f"Session {session.pin} closed ({reason.value})")
            if consumer is not None:
                consumer.pin = None
            if reason == DisconnectReason.LEAVE and consumer is not None:
                try:
                    await consumer.close(CLOSE_PEER_LEFT)
                except Exception as e:
                    logger.error(f"Failed to close consumer {consumer.conn_id}: {e}")
        elif conn is session.consumer:
            session.consumer = None
            logger.info(f"Consumer left session {session.pin} ({reason.value})")

        conn.pin = None
