"""
Process-wide request gate for external lookups.

A leaky bucket that lets one request through per min_interval seconds,
shared by every caller holding the same instance.
"""
import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Enforce a minimum delay between consecutive acquisitions.

    Args:
        min_interval: Seconds between two requests.
        clock: Monotonic time source.
        sleep: Sleep function; injectable so tests do not block.
    """

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = None

    def acquire(self) -> float:
        """
        Block until the caller may issue a request.

        Returns:
            Seconds spent waiting.
        """
        with self._lock:
            now = self._clock()
            if self._next_slot is None or self._next_slot <= now:
                wait = 0.0
                slot = now
            else:
                wait = self._next_slot - now
                slot = self._next_slot
            # Reserve the slot before sleeping so concurrent callers queue behind it
            self._next_slot = slot + self.min_interval

        if wait > 0:
            logger.debug(f"Rate limiter waiting {wait:.3f}s")
            self._sleep(wait)
        return wait

    def reset(self) -> None:
        with self._lock:
            self._next_slot = None
