"""
Transfer tasks.

A task owns one file transfer in one direction on one data channel:
SendTask chunks a payload with send-side backpressure, RecvTask
reassembles it and reports throughput back to the sender.
"""

import asyncio
import logging
import time
from typing import Callable

from config import (
    CHUNK_SIZE,
    PROGRESS_INTERVAL,
    SEND_BUFFER_LIMIT,
    SEND_BUFFER_LOW_THRESHOLD,
    SEND_IDLE_TIMEOUT,
)
from transfer.events import EventEmitter, EventKind
from transfer.models import (
    MetaMessage,
    ProgressMessage,
    ProtocolError,
    TransferInfo,
    TransferState,
    chunk_payload,
    decode_control,
    encode_control,
)

logger = logging.getLogger(__name__)

DONE_STATES = (TransferState.FINISHED, TransferState.FAILED)


class TransferTask(EventEmitter):
    """
    Common bookkeeping for both directions.

    Events:
        PROGRESS(task), FINISH(task, data), FAILED(task)
    """

    def __init__(self, info: TransferInfo, channel) -> None:
        super().__init__()
        self.info = info
        self._channel = channel

    @property
    def id(self) -> str:
        return self.info.meta.id

    @property
    def channel(self):
        return self._channel

    @property
    def done(self) -> bool:
        return self.info.state in DONE_STATES

    def is_complete(self) -> bool:
        return self.info.progress.received_size == self.info.meta.size

    def handle_message(self, message: str | bytes) -> None:
        raise NotImplementedError

    def abandon(self, reason: str) -> None:
        """Give up on the transfer (channel or connection lost)."""
        if not self.done:
            self._fail(reason)

    def _fail(self, reason: str) -> None:
        self.info.state = TransferState.FAILED
        self.info.error_message = reason
        logger.warning(f"Transfer {self.id} ({self.info.meta.name}) failed: {reason}")
        self._cleanup()
        self._emit(EventKind.FAILED, self)

    def _finish(self, data: bytes | None = None) -> None:
        self.info.state = TransferState.FINISHED
        logger.info(
            f"Transfer {self.id} ({self.info.meta.name}) finished, "
            f"{self.info.meta.size} bytes"
        )
        self._cleanup()
        self._emit(EventKind.FINISH, self, data)

    def _cleanup(self) -> None:
        pass

    def _send(self, payload: str | bytes) -> bool:
        try:
            self._channel.send(payload)
            return True
        except Exception as e:
            logger.error(f"Send error on {self._channel.label}: {e}")
            self._fail(str(e))
            return False


class SendTask(TransferTask):
    """Sends one payload and finishes when the receiver confirms all of it."""

    def __init__(
        self,
        info: TransferInfo,
        channel,
        *,
        chunk_size: int = CHUNK_SIZE,
        buffer_limit: int = SEND_BUFFER_LIMIT,
        idle_timeout: float | None = SEND_IDLE_TIMEOUT,
    ) -> None:
        super().__init__(info, channel)
        self._chunk_size = chunk_size
        self._buffer_limit = buffer_limit
        self._idle_timeout = idle_timeout
        self._drained = asyncio.Event()
        self._progressed = asyncio.Event()

        channel.bufferedAmountLowThreshold = SEND_BUFFER_LOW_THRESHOLD
        channel.on("bufferedamountlow", self._on_buffered_amount_low)

    def _on_buffered_amount_low(self) -> None:
        self._drained.set()

    def _cleanup(self) -> None:
        self._channel.remove_listener("bufferedamountlow", self._on_buffered_amount_low)
        # wake anything still waiting
        self._drained.set()
        self._progressed.set()

    async def start(self, data: bytes) -> None:
        """Send meta, then every chunk, then wait for the receiver's echo."""
        if len(data) != self.info.meta.size:
            self._fail(f"Payload is {len(data)} bytes, meta says {self.info.meta.size}")
            return

        self.info.state = TransferState.SENDING_META
        if not self._send(encode_control(MetaMessage(data=self.info.meta))):
            return

        # Slice everything before the loop; slicing per send slows it down
        chunks = chunk_payload(data, self._chunk_size)
        self.info.state = TransferState.SENDING_DATA
        for chunk in chunks:
            while self._channel.bufferedAmount > self._buffer_limit and not self.done:
                self._drained.clear()
                await self._drained.wait()
            if self.done or not self._send(chunk):
                return

        if self.done:
            return
        self.info.state = TransferState.AWAITING_REMOTE_PROGRESS
        await self._await_remote_progress()

    async def _await_remote_progress(self) -> None:
        while not self.done:
            self._progressed.clear()
            try:
                await asyncio.wait_for(self._progressed.wait(), timeout=self._idle_timeout)
            except asyncio.TimeoutError:
                self._fail(f"No progress from receiver for {self._idle_timeout}s")

    def handle_message(self, message: str | bytes) -> None:
        if self.done:
            return
        if not isinstance(message, str):
            logger.warning(f"Dropping binary message on sending channel {self._channel.label}")
            return
        try:
            msg = decode_control(message)
        except ProtocolError as e:
            logger.warning(f"Dropping control message on {self._channel.label}: {e}")
            return
        if not isinstance(msg, ProgressMessage):
            logger.warning(f"Dropping {msg.type} on sending channel {self._channel.label}")
            return

        self.info.progress = msg.data
        self._progressed.set()
        self._emit(EventKind.PROGRESS, self)
        if self.is_complete():
            self._finish()


class RecvTask(TransferTask):
    """Reassembles a payload announced by a META message."""

    def __init__(
        self,
        info: TransferInfo,
        channel,
        *,
        interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(info, channel)
        self._interval = interval
        self._clock = clock
        self._buffer: list[bytes] = []
        self._last_sample_time = clock()
        self._last_sample_size = 0
        self.info.state = TransferState.AWAITING_DATA

    def start(self) -> None:
        """Finish straight away for an empty file."""
        if self.is_complete():
            self._sample(self._clock())
            if not self.done:
                self._complete()

    def handle_message(self, message: str | bytes) -> None:
        if self.done:
            return
        if isinstance(message, str):
            logger.warning(f"Dropping control message during receive on {self._channel.label}")
            return

        progress = self.info.progress
        if progress.received_size + len(message) > self.info.meta.size:
            logger.warning(
                f"Dropping {len(message)} bytes past the declared size of {self.id}"
            )
            return

        self.info.state = TransferState.RECEIVING
        self._buffer.append(message)
        progress.received_size += len(message)

        # Too frequent updates would compete with the data itself
        now = self._clock()
        if now - self._last_sample_time >= self._interval or self.is_complete():
            self._sample(now)
        if self.is_complete() and not self.done:
            self._complete()

    def _sample(self, now: float) -> None:
        progress = self.info.progress
        elapsed_ms = (now - self._last_sample_time) * 1000
        if elapsed_ms > 0:
            progress.rate = (progress.received_size - self._last_sample_size) / elapsed_ms * 1000
        else:
            progress.rate = 0.0
        self._last_sample_time = now
        self._last_sample_size = progress.received_size

        self._emit(EventKind.PROGRESS, self)
        self._send(encode_control(ProgressMessage(data=progress)))

    def _complete(self) -> None:
        data = b"".join(self._buffer)
        self._buffer = []
        self._finish(data)

    def _cleanup(self) -> None:
        self._buffer = []
