"""
Transfer Manager — multiplexes file transfers over the channel pool.

Creates send tasks on request and receive tasks whenever a META message
shows up on a free channel, and republishes their lifecycle events.
"""

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path

from transfer.events import EventEmitter, EventKind
from transfer.models import (
    MetaMessage,
    ProtocolError,
    TransferDirection,
    TransferInfo,
    TransferMeta,
    decode_control,
)
from transfer.pool import DataChannelPool, FreeMessage
from transfer.task import RecvTask, SendTask, TransferTask

logger = logging.getLogger(__name__)


class TransferError(RuntimeError):
    """Raised to the caller when a transfer cannot be started."""


class NoFreeChannelError(TransferError):
    """Every channel in the pool is busy; retry later."""


class LinkClosedError(TransferError):
    """The peer link is gone; nothing more can be sent."""


@dataclass
class TaskFinished:
    """Payload of TASK_FINISH."""
    info: TransferInfo
    data: bytes | None = None
    path: str | None = None


def unique_path(save_dir: str, name: str) -> Path:
    """Pick a path in save_dir for name that does not exist yet."""
    safe_name = Path(name).name or "unnamed"
    candidate = Path(save_dir) / safe_name
    stem, suffix = candidate.stem, candidate.suffix
    n = 1
    while candidate.exists():
        candidate = Path(save_dir) / f"{stem} ({n}){suffix}"
        n += 1
    return candidate


class TransferManager(EventEmitter):
    """
    Manages all active transfers on one peer link.

    Events:
        READY(), CLOSE(), TASK(info), TASK_PROGRESS(info),
        TASK_FINISH(TaskFinished), TASK_FAILED(info)
    """

    def __init__(
        self,
        pool: DataChannelPool,
        save_dir: str | None = None,
        send_options: dict | None = None,
        recv_options: dict | None = None,
    ) -> None:
        super().__init__()
        self._pool = pool
        self._save_dir = save_dir
        self._send_options = send_options or {}
        self._recv_options = recv_options or {}
        self._tasks: dict[str, TransferTask] = {}
        self._runners: dict[str, asyncio.Task] = {}

        self._pool.on(EventKind.READY, lambda: self._emit(EventKind.READY))
        self._pool.on(EventKind.CLOSE, self._on_pool_close)
        self._pool.on(EventKind.FREE_MESSAGE, self._on_free_message)

    @property
    def pool(self) -> DataChannelPool:
        return self._pool

    @property
    def save_dir(self) -> str | None:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str | None) -> None:
        if path:
            os.makedirs(path, exist_ok=True)
        self._save_dir = path

    def get_tasks(self) -> list[TransferInfo]:
        """Return the info of every task still in flight."""
        return [task.info for task in self._tasks.values()]

    def get_task(self, task_id: str) -> TransferTask | None:
        return self._tasks.get(task_id)

    # --- Sending ---

    def send(self, name: str, data: bytes) -> TransferInfo:
        """Start sending data on a free channel; raises NoFreeChannelError."""
        if self._pool.closed:
            raise LinkClosedError("Peer link closed")
        channel = self._pool.acquire()
        if channel is None:
            logger.warning(f"No free data channel to send {name}")
            raise NoFreeChannelError("No data channel available")

        info = TransferInfo(
            direction=TransferDirection.SEND,
            meta=TransferMeta(id=str(uuid.uuid4()), name=name, size=len(data)),
        )
        task = SendTask(info, channel, **self._send_options)
        self._register(task)
        self._pool.bind(channel, task)
        task.on(EventKind.FINISH, self._on_send_finish)
        task.on(EventKind.FAILED, self._on_send_done)

        logger.info(f"Sending {name} ({len(data)} bytes) on {channel.label}")
        self._runners[info.id] = asyncio.create_task(self._run_send(task, data))
        self._emit(EventKind.TASK, info)
        return info

    async def send_file(self, file_path: str) -> TransferInfo:
        """Read a whole file into memory and send it."""
        if self._pool.closed:
            raise LinkClosedError("Peer link closed")
        if self._pool.free_count() == 0:
            raise NoFreeChannelError("No data channel available")
        data = await asyncio.to_thread(Path(file_path).read_bytes)
        return self.send(os.path.basename(file_path), data)

    async def _run_send(self, task: SendTask, data: bytes) -> None:
        try:
            await task.start(data)
        except asyncio.CancelledError:
            task.abandon("cancelled")
        except Exception as e:
            logger.error(f"Send task {task.id} crashed: {e}", exc_info=True)
            task.abandon(str(e))
        finally:
            self._runners.pop(task.id, None)

    def _on_send_finish(self, task: TransferTask, _data: None) -> None:
        self._on_send_done(task)
        self._emit(EventKind.TASK_FINISH, TaskFinished(task.info))

    def _on_send_done(self, task: TransferTask) -> None:
        self._tasks.pop(task.id, None)
        self._release(task)

    # --- Receiving ---

    def _on_free_message(self, event: FreeMessage) -> None:
        if not isinstance(event.message, str):
            logger.warning(f"Dropping data on idle channel {event.channel.label}")
            return
        try:
            msg = decode_control(event.message)
        except ProtocolError as e:
            logger.warning(f"Dropping message on idle channel {event.channel.label}: {e}")
            return
        if not isinstance(msg, MetaMessage):
            logger.warning(f"Dropping {msg.type} on idle channel {event.channel.label}")
            return

        meta = msg.data
        if meta.id in self._tasks:
            logger.warning(f"Duplicate transfer id {meta.id}, ignoring")
            return
        if not self._pool.claim(event.channel):
            return

        info = TransferInfo(direction=TransferDirection.RECV, meta=meta)
        task = RecvTask(info, event.channel, **self._recv_options)
        self._register(task)
        self._pool.bind(event.channel, task)
        task.on(EventKind.FINISH, self._on_recv_finish)
        task.on(EventKind.FAILED, self._on_recv_failed)

        logger.info(f"Receiving {meta.name} ({meta.size} bytes) on {event.channel.label}")
        self._emit(EventKind.TASK, info)
        task.start()

    def _on_recv_finish(self, task: TransferTask, data: bytes) -> None:
        self._tasks.pop(task.id, None)
        self._release(task)
        if self._save_dir:
            self._spawn(self._save(task.info, data), f"Failed to save {task.info.meta.name}")
        else:
            self._emit(EventKind.TASK_FINISH, TaskFinished(task.info, data))

    def _on_recv_failed(self, task: TransferTask) -> None:
        self._tasks.pop(task.id, None)
        self._release(task)

    async def _save(self, info: TransferInfo, data: bytes) -> None:
        try:
            os.makedirs(self._save_dir, exist_ok=True)
            path = unique_path(self._save_dir, info.meta.name)
            await asyncio.to_thread(path.write_bytes, data)
            logger.info(f"Saved {info.meta.name} to {path}")
        except OSError as e:
            logger.error(f"Failed to save {info.meta.name}: {e}")
            self._emit(EventKind.TASK_FINISH, TaskFinished(info, data))
            return
        self._emit(EventKind.TASK_FINISH, TaskFinished(info, data, str(path)))

    # --- Shared ---

    def _release(self, task: TransferTask) -> None:
        # the channel may already be gone with the pool or on its own
        if not self._pool.closed and task.channel in self._pool:
            self._pool.release(task.channel)

    def _register(self, task: TransferTask) -> None:
        self._tasks[task.id] = task
        task.on(EventKind.PROGRESS, lambda t: self._emit(EventKind.TASK_PROGRESS, t.info))
        task.on(EventKind.FAILED, lambda t: self._emit(EventKind.TASK_FAILED, t.info))

    def _on_pool_close(self) -> None:
        for task in list(self._tasks.values()):
            task.abandon("connection closed")
        self._tasks.clear()
        for runner in self._runners.values():
            runner.cancel()
        self._runners.clear()
        self._emit(EventKind.CLOSE)
