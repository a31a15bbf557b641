"""Minimal typed observer registry shared by the pool, tasks and manager."""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    # pool / manager lifecycle
    READY = "ready"
    CLOSE = "close"
    FREE_MESSAGE = "free-message"
    # manager task events
    TASK = "task"
    TASK_PROGRESS = "task-progress"
    TASK_FINISH = "task-finish"
    TASK_FAILED = "task-failed"
    # per-task events
    PROGRESS = "progress"
    FINISH = "finish"
    FAILED = "failed"


class EventEmitter:
    """Dispatches events to callbacks registered per EventKind."""

    def __init__(self) -> None:
        self._event_callbacks: dict[EventKind, list[Callable]] = {}
        self._background: set[asyncio.Future] = set()

    def on(self, kind: EventKind, callback: Callable) -> None:
        """Register callback: fn(*args), sync or async."""
        self._event_callbacks.setdefault(kind, []).append(callback)

    def _emit(self, kind: EventKind, *args) -> None:
        for cb in list(self._event_callbacks.get(kind, ())):
            try:
                result = cb(*args)
                if inspect.isawaitable(result):
                    self._spawn(result, f"Event callback error ({kind.value})")
            except Exception as e:
                logger.error(f"Event callback error ({kind.value}): {e}")

    def _spawn(self, awaitable, error_message: str) -> asyncio.Future:
        """Run awaitable in the background, logging its failure."""
        future = asyncio.ensure_future(awaitable)
        self._background.add(future)

        def done(f: asyncio.Future) -> None:
            self._background.discard(f)
            if not f.cancelled() and f.exception() is not None:
                logger.error(f"{error_message}: {f.exception()}")

        future.add_done_callback(done)
        return future
