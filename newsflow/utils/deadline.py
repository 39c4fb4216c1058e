from __future__ import annotations

import threading
import time
from typing import Callable, Optional

Clock = Callable[[], float]


class Deadline:
    """A time budget shared by every external call made for one job.

    Cancelling a deadline (worker shutdown) makes it behave as expired, so
    the next suspension point gives up.
    """

    def __init__(
        self,
        seconds: Optional[float],
        *,
        clock: Clock = time.monotonic,
        parent: Optional["Deadline"] = None,
    ) -> None:
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + max(seconds, 0.0)
        self._cancelled = threading.Event()
        self._parent = parent

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def child(self, seconds: Optional[float]) -> "Deadline":
        """Return a deadline no later than this one."""
        return Deadline(seconds, clock=self._clock, parent=self)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._parent.cancelled if self._parent else False

    def remaining(self) -> Optional[float]:
        """Seconds left, ``0.0`` when cancelled, ``None`` when unbounded."""
        if self.cancelled:
            return 0.0
        own = None
        if self._expires_at is not None:
            own = max(self._expires_at - self._clock(), 0.0)
        inherited = self._parent.remaining() if self._parent else None
        if own is None:
            return inherited
        if inherited is None:
            return own
        return min(own, inherited)

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def bound(self, timeout: Optional[float]) -> Optional[float]:
        """Clamp a per-call ``timeout`` to the time left."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)
