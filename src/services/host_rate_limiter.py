"""Per-host sliding-window admission control for outbound requests.

Every probe and upstream fetch awaits ``admit_or_wait(host)`` before touching
the network, so a single origin never sees more than ``max_requests`` calls
per ``window_seconds`` from this process regardless of how many videos share it.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Smallest sleep between re-checks when the window is full
MIN_WAIT_SECONDS = 0.05


def host_of(url: str) -> Optional[str]:
    """Extract the hostname used as the admission key, or None if unparseable."""
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


class HostAdmissionController:
    """In-memory per-host rate limiter.

    Windows are process-local and reset on restart. There is no fairness
    between callers waiting on the same host: the first to wake takes the slot.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 6,
        max_wait_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the controller.

        Args:
            window_seconds: Sliding window length
            max_requests: Requests allowed per host within one window
            max_wait_seconds: Cap on a single sleep before re-checking
            clock: Monotonic time source (overridable in tests)
            sleep: Async sleep function (overridable in tests)
        """
        self.window_seconds = window_seconds
        self.max_requests = max(1, max_requests)
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep
        self._windows: dict[str, deque[float]] = {}

    @classmethod
    def from_config(cls, config: dict) -> "HostAdmissionController":
        return cls(
            window_seconds=config.get("host_rate_window_seconds", 60.0),
            max_requests=config.get("host_rate_max_requests", 6),
            max_wait_seconds=config.get("host_rate_max_wait_seconds", 30.0),
        )

    def _purge(self, entries: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while entries and entries[0] < cutoff:
            entries.popleft()

    async def admit_or_wait(self, host: Optional[str]) -> float:
        """Block until ``host`` has a free slot, then record the request.

        Args:
            host: Destination hostname. Empty/None is admitted immediately.

        Returns:
            Total seconds spent waiting
        """
        if not host:
            return 0.0

        waited = 0.0
        while True:
            entries = self._windows.setdefault(host, deque())
            now = self._clock()
            self._purge(entries, now)

            if len(entries) < self.max_requests:
                entries.append(now)
                if waited:
                    logger.debug(f"Admitted {host} after waiting {waited:.2f}s")
                return waited

            delay = max(MIN_WAIT_SECONDS, (entries[0] + self.window_seconds) - now)
            delay = min(delay, self.max_wait_seconds)
            logger.debug(f"Host {host} at limit ({self.max_requests}/{self.window_seconds}s), waiting {delay:.2f}s")
            await self._sleep(delay)
            waited += delay

    async def admit_url(self, url: str) -> float:
        """Convenience wrapper keyed by the URL's hostname."""
        return await self.admit_or_wait(host_of(url))

    def pending(self, host: str) -> int:
        """Number of requests currently counted against ``host``."""
        entries = self._windows.get(host)
        if not entries:
            return 0
        self._purge(entries, self._clock())
        return len(entries)

    def reset(self) -> None:
        self._windows.clear()
