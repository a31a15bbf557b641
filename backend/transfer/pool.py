"""
Data channel pool.

Owns a fixed-size set of open data channels on one peer connection and
tracks which of them are free and which are checked out by a task.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from config import POOL_SIZE
from transfer.events import EventEmitter, EventKind

logger = logging.getLogger(__name__)

# Peer connection states that end the pool
TERMINAL_STATES = ("failed", "closed", "disconnected")


class PoolError(RuntimeError):
    """Raised on misuse of the pool."""


class ChannelOwner(Protocol):
    def handle_message(self, message: str | bytes) -> None: ...

    def abandon(self, reason: str) -> None: ...


@dataclass
class FreeMessage:
    """A message that arrived on a channel nobody has checked out."""
    channel: Any
    message: str | bytes


def _label_key(label: str) -> tuple[int, str]:
    return (len(label), label)


class DataChannelPool(EventEmitter):
    """Fixed-size pool of data channels shared by all transfer tasks."""

    def __init__(self, pc, size: int = POOL_SIZE) -> None:
        super().__init__()
        self._pc = pc
        self.size = size
        self._pool: dict[str, Any] = {}
        self._free: list[str] = []
        self._owners: dict[str, ChannelOwner] = {}
        self._backlog: list[tuple[str, str | bytes]] = []
        self._accepted = 0
        self._passive = False
        self._ready = False
        self._settled = asyncio.Event()
        self.closed = False

        self._pc.on("connectionstatechange", self._on_connection_state_change)

    @property
    def ready(self) -> bool:
        return self._ready

    def on(self, kind: EventKind, callback) -> None:
        super().on(kind, callback)
        # Replay early messages one by one; an early META may claim its channel
        if kind == EventKind.FREE_MESSAGE and self._backlog:
            backlog, self._backlog = self._backlog, []
            for label, message in backlog:
                self._on_message(label, message)

    def initialize(self, passive: bool = False) -> None:
        """
        Set up the channels.

        Active: create `size` channels locally. Passive: accept `size`
        channels announced by the remote side. Either way the pool becomes
        ready once every channel is open.
        """
        self._passive = passive
        if passive:
            self._pc.on("datachannel", self._on_remote_channel)
        else:
            for i in range(self.size):
                channel = self._pc.createDataChannel(f"dc-{i}", ordered=True)
                self._track(channel)

    async def wait_ready(self) -> None:
        await self._settled.wait()
        if not self._ready:
            raise PoolError("Pool closed before it became ready")

    def _on_remote_channel(self, channel) -> None:
        if self.closed or self._accepted >= self.size:
            logger.warning(f"Rejecting extra data channel {channel.label}")
            channel.close()
            return
        self._accepted += 1
        self._track(channel)

    def _track(self, channel) -> None:
        label = channel.label
        channel.on("message", lambda message: self._on_message(label, message))
        channel.on("close", lambda: self._on_channel_close(label))
        if channel.readyState == "open":
            self._on_open(channel)
        else:
            channel.on("open", lambda: self._on_open(channel))

    def _on_open(self, channel) -> None:
        if self.closed or channel.label in self._pool:
            return
        self._pool[channel.label] = channel
        self._free.append(channel.label)
        logger.debug(f"Data channel {channel.label} open ({len(self._pool)}/{self.size})")

        if len(self._pool) == self.size and not self._ready:
            # Opposite orders on the two sides keep simultaneous sends apart
            self._free.sort(key=_label_key, reverse=self._passive)
            self._ready = True
            self._settled.set()
            logger.info(f"Data channel pool ready ({self.size} channels)")
            self._emit(EventKind.READY)

    def _on_message(self, label: str, message: str | bytes) -> None:
        channel = self._pool.get(label)
        if channel is None:
            return
        if label in self._free:
            if self._event_callbacks.get(EventKind.FREE_MESSAGE):
                self._emit(EventKind.FREE_MESSAGE, FreeMessage(channel, message))
            else:
                self._backlog.append((label, message))
            return
        owner = self._owners.get(label)
        if owner is None:
            logger.warning(f"Dropping message on unowned channel {label}")
            return
        owner.handle_message(message)

    def _on_channel_close(self, label: str) -> None:
        if self.closed:
            return
        self._pool.pop(label, None)
        if label in self._free:
            self._free.remove(label)
        owner = self._owners.pop(label, None)
        logger.warning(f"Data channel {label} closed ({len(self._pool)} left)")
        if owner is not None:
            owner.abandon(f"channel {label} closed")

    def _on_connection_state_change(self) -> None:
        state = self._pc.connectionState
        logger.debug(f"Peer connection state: {state}")
        if state in TERMINAL_STATES:
            self.close()

    def close(self) -> None:
        """Close every channel and emit CLOSE; the pool is unusable afterwards."""
        if self.closed:
            return
        self.closed = True
        for channel in self._pool.values():
            try:
                channel.close()
            except Exception as e:
                logger.debug(f"Error closing channel {channel.label}: {e}")
        self._pool.clear()
        self._free.clear()
        self._owners.clear()
        self._backlog.clear()
        self._settled.set()
        logger.info("Data channel pool closed")
        self._emit(EventKind.CLOSE)

    def __contains__(self, channel) -> bool:
        return channel.label in self._pool

    def __len__(self) -> int:
        return len(self._pool)

    def free_count(self) -> int:
        return len(self._free)

    def acquire(self):
        """Check out the channel at the head of the free list, or None."""
        if not self._free:
            return None
        return self._pool[self._free.pop(0)]

    def claim(self, channel) -> bool:
        """Check out a specific free channel."""
        if channel.label not in self._free:
            return False
        self._free.remove(channel.label)
        return True

    def release(self, channel) -> None:
        """Return a checked-out channel to the tail of the free list."""
        label = channel.label
        if label not in self._pool:
            raise PoolError(f"No such data channel: {label}")
        self._owners.pop(label, None)
        if label not in self._free:
            self._free.append(label)

    def bind(self, channel, owner: ChannelOwner) -> None:
        """Route every message on a checked-out channel to its owner."""
        label = channel.label
        if label not in self._pool or label in self._free:
            raise PoolError(f"Channel {label} is not checked out")
        self._owners[label] = owner
