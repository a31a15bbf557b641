"""
Signaling client.

Thin request/event facade over the relay WebSocket: join by pin and
exchange offer, answer and ice messages with the paired peer.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable

import websockets
from pydantic import ValidationError

from config import RELAY_URL
from relay.models import RelayEnvelope, RelayEvent

logger = logging.getLogger(__name__)


class SignalingError(RuntimeError):
    """Raised when the relay rejects a request or the socket is gone."""


class SignalingClient:
    """One connection to the rendezvous relay."""

    def __init__(self, url: str = RELAY_URL) -> None:
        self._url = url
        self._websocket = None
        self._receiver: asyncio.Task | None = None
        self._next_ack = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._handlers: dict[RelayEvent, list[Callable]] = {}
        self._close_callbacks: list[Callable] = []
        self._background: set[asyncio.Future] = set()
        self.pin: int | None = None

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    async def connect(self) -> None:
        self._websocket = await websockets.connect(self._url)
        self._receiver = asyncio.create_task(self._receive_loop())
        logger.info(f"Connected to relay {self._url}")

    async def close(self) -> None:
        if self._websocket is not None:
            await self._websocket.close()
        if self._receiver is not None:
            await self._receiver

    async def leave(self) -> None:
        """Leave deliberately; a producer's pin is freed by the relay."""
        if self._websocket is None:
            return
        try:
            await self._send(RelayEnvelope(event=RelayEvent.LEAVE))
        except SignalingError:
            pass
        await self.close()

    # --- Requests ---

    async def join(self, pin: int | None = None) -> int:
        """Join as producer (no pin) or consumer; returns the resolved pin."""
        self._next_ack += 1
        ack = self._next_ack
        future = asyncio.get_running_loop().create_future()
        self._pending[ack] = future
        try:
            await self._send(RelayEnvelope(event=RelayEvent.PIN, data=pin, ack=ack))
        except SignalingError:
            self._pending.pop(ack, None)
            raise
        self.pin = int(await future)
        logger.info(f"Joined relay session {self.pin} as {'consumer' if pin else 'producer'}")
        return self.pin

    async def send_offer(self, sdp: str) -> None:
        await self._send(RelayEnvelope(event=RelayEvent.OFFER, data=sdp))

    async def send_answer(self, sdp: str) -> None:
        await self._send(RelayEnvelope(event=RelayEvent.ANSWER, data=sdp))

    async def send_ice(self, candidate: dict) -> None:
        await self._send(RelayEnvelope(event=RelayEvent.ICE, data=candidate))

    async def _send(self, envelope: RelayEnvelope) -> None:
        if self._websocket is None:
            raise SignalingError("Not connected to the relay")
        try:
            await self._websocket.send(envelope.model_dump_json(exclude_none=True))
        except websockets.ConnectionClosed as e:
            raise SignalingError(f"Relay connection closed: {e}") from e

    # --- Events ---

    def on_offer(self, callback: Callable[[str], Any]) -> None:
        self._handlers.setdefault(RelayEvent.OFFER, []).append(callback)

    def on_answer(self, callback: Callable[[str], Any]) -> None:
        self._handlers.setdefault(RelayEvent.ANSWER, []).append(callback)

    def on_ice(self, callback: Callable[[dict], Any]) -> None:
        self._handlers.setdefault(RelayEvent.ICE, []).append(callback)

    def on_close(self, callback: Callable[[], Any]) -> None:
        self._close_callbacks.append(callback)

    async def _receive_loop(self) -> None:
        try:
            async for raw in self._websocket:
                self._dispatch(raw)
        except websockets.ConnectionClosed as e:
            logger.warning(f"Relay connection dropped: {e}")
        finally:
            self._on_closed()

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            envelope = RelayEnvelope.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid relay frame: {e}")
            return

        if envelope.event == RelayEvent.ACK:
            future = self._pending.pop(envelope.ack, None)
            if future is None or future.done():
                return
            if envelope.error:
                future.set_exception(SignalingError(envelope.error))
            else:
                future.set_result(envelope.data)
            return

        logger.debug(f"Relay event {envelope.event.value}")
        for cb in self._handlers.get(envelope.event, ()):
            self._call(cb, envelope.data)

    def _on_closed(self) -> None:
        self._websocket = None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(SignalingError("Relay connection closed"))
        self._pending.clear()
        for cb in self._close_callbacks:
            self._call(cb)
        logger.info("Disconnected from relay")

    def _call(self, cb: Callable, *args) -> None:
        try:
            result = cb(*args)
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._background.add(future)
                future.add_done_callback(self._on_background_done)
        except Exception as e:
            logger.error(f"Signaling callback error: {e}")

    def _on_background_done(self, future: asyncio.Future) -> None:
        self._background.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Signaling callback error: {future.exception()}")
