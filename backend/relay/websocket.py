"""WebSocket transport for the rendezvous relay."""

import asyncio
import logging
import uuid
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from relay.models import DisconnectReason, RelayEnvelope, RelayEvent
from relay.pin import PinExhaustedError
from relay.service import JoinError, RendezvousRelay

logger = logging.getLogger(__name__)

# Close code of a normal, deliberate closure
CLOSE_NORMAL = 1000


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the relay's connection interface."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.conn_id = uuid.uuid4().hex[:8]
        self.pin: int | None = None
        self.is_producer = False
        self.closed = False

    async def send(self, event: RelayEvent, data: Any) -> None:
        await self.send_envelope(RelayEnvelope(event=event, data=data))

    async def send_envelope(self, envelope: RelayEnvelope) -> None:
        if self.closed:
            return
        await self.websocket.send_text(envelope.model_dump_json(exclude_none=True))

    async def close(self, code: int = CLOSE_NORMAL) -> None:
        if self.closed:
            return
        self.closed = True
        await self.websocket.close(code=code)


class RelayConnectionManager:
    """Accepts relay sockets and routes their events into the relay."""

    def __init__(self, relay: RendezvousRelay) -> None:
        self._relay = relay
        self._connections: dict[str, WebSocketConnection] = {}
        self._lock = asyncio.Lock()

    @property
    def relay(self) -> RendezvousRelay:
        return self._relay

    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> WebSocketConnection:
        await websocket.accept()
        conn = WebSocketConnection(websocket)
        async with self._lock:
            self._connections[conn.conn_id] = conn
        logger.info(f"Relay client {conn.conn_id} connected. Total: {len(self._connections)}")
        return conn

    async def disconnect(self, conn: WebSocketConnection, reason: DisconnectReason) -> None:
        async with self._lock:
            self._connections.pop(conn.conn_id, None)
        conn.closed = True
        await self._relay.disconnect(conn, reason)
        logger.info(
            f"Relay client {conn.conn_id} disconnected ({reason.value}). "
            f"Total: {len(self._connections)}"
        )

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client socket until it closes."""
        conn = await self.connect(websocket)
        reason = DisconnectReason.TRANSPORT
        left = False
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    envelope = RelayEnvelope.model_validate_json(raw)
                except ValidationError as e:
                    logger.warning(f"Ignoring invalid frame from {conn.conn_id}: {e}")
                    continue

                if envelope.event == RelayEvent.LEAVE:
                    reason = DisconnectReason.LEAVE
                    left = True
                    break
                await self._handle(conn, envelope)
        except WebSocketDisconnect as e:
            if e.code == CLOSE_NORMAL:
                reason = DisconnectReason.LEAVE
        except Exception as e:
            logger.error(f"Relay client {conn.conn_id} failed: {e}")
        finally:
            await self.disconnect(conn, reason)

        if left:
            try:
                await websocket.close(code=CLOSE_NORMAL)
            except RuntimeError:
                pass

    async def _handle(self, conn: WebSocketConnection, envelope: RelayEnvelope) -> None:
        if envelope.event == RelayEvent.PIN:
            await self._handle_join(conn, envelope)
        elif envelope.event in (RelayEvent.OFFER, RelayEvent.ANSWER, RelayEvent.ICE):
            await self._relay.relay(conn, envelope.event, envelope.data)
        else:
            logger.debug(f"Ignoring {envelope.event.value} from {conn.conn_id}")

    async def _handle_join(self, conn: WebSocketConnection, envelope: RelayEnvelope) -> None:
        reply = RelayEnvelope(event=RelayEvent.ACK, ack=envelope.ack)
        try:
            pin = None if envelope.data is None else int(envelope.data)
            reply.data = await self._relay.join(conn, pin)
        except (TypeError, ValueError):
            reply.error = f"Invalid pin: {envelope.data!r}"
        except (JoinError, PinExhaustedError) as e:
            reply.error = str(e)

        if reply.error:
            logger.warning(f"Join rejected for {conn.conn_id}: {reply.error}")
        if envelope.ack is not None:
            await conn.send_envelope(reply)
