"""Pin allocation for the rendezvous relay."""

import logging
import random

from config import PIN_MAX, PIN_MIN

logger = logging.getLogger(__name__)

PIN_RANGE = PIN_MAX - PIN_MIN + 1


class PinExhaustedError(RuntimeError):
    """Raised when every pin in the range is currently allocated."""


class PinRegistry:
    """Tracks the 4-digit pins currently handed out to producers."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._used: set[int] = set()
        self._rng = rng or random.Random()

    def __len__(self) -> int:
        return len(self._used)

    def in_use(self, pin: int) -> bool:
        return pin in self._used

    def allocate(self) -> int:
        """
        Pick a random pin and probe forward for a free one.

        Probing wraps inside [PIN_MIN, PIN_MAX]; a full cycle back to the
        starting candidate means the range is exhausted.
        """
        start = self._rng.randint(PIN_MIN, PIN_MAX)
        pin = start
        while pin in self._used:
            pin = PIN_MIN + (pin - PIN_MIN + 1) % PIN_RANGE
            if pin == start:
                raise PinExhaustedError("No available pin")
        self._used.add(pin)
        logger.debug(f"Allocated pin {pin} ({len(self._used)} in use)")
        return pin

    def free(self, pin: int) -> None:
        self._used.discard(pin)
