"""Per-identity fixed-window rate limiting.

Each identity gets a window that opens on its first request and lasts
``window_seconds``. Up to ``max_requests`` are admitted inside the window;
later requests are denied until the window expires. Windows are not rolling:
the count resets all at once at ``reset_at``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .types import RateDecision, RateWindow

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """In-memory rate limiter keyed by identity."""

    def __init__(
        self,
        max_requests: int = 20,
        window_seconds: float = 60.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def check(self, key: str) -> RateDecision:
        """Admit or deny one request for ``key``."""
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now >= window.reset_at:
            self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
            return RateDecision(allowed=True)

        if window.count < self.max_requests:
            window.count += 1
            return RateDecision(allowed=True)

        retry_after = window.reset_at - now
        logger.warning(
            "rate limit exceeded for %s (%d/%.0fs), retry in %.1fs",
            key,
            self.max_requests,
            self.window_seconds,
            retry_after,
        )
        return RateDecision(allowed=False, retry_after=retry_after)

    def usage(self, key: str) -> RateWindow | None:
        window = self._windows.get(key)
        if window is None or self._clock() >= window.reset_at:
            return None
        return RateWindow(key=key, count=window.count, reset_at=window.reset_at)

    def reset(self, key: str) -> None:
        """Forget the window for ``key`` (admin use)."""
        self._windows.pop(key, None)
        logger.info("rate limit reset for %s", key)

    def active(self) -> list[RateWindow]:
        """All windows that have not yet expired."""
        now = self._clock()
        return [
            RateWindow(key=key, count=w.count, reset_at=w.reset_at)
            for key, w in self._windows.items()
            if now < w.reset_at
        ]

    def sweep(self) -> int:
        """Drop expired windows. Returns the number removed."""
        now = self._clock()
        expired = [key for key, w in self._windows.items() if now >= w.reset_at]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("swept %d expired rate-limit windows", len(expired))
        return len(expired)

    def seconds_until_reset(self, reset_at: float) -> float:
        return max(0.0, reset_at - self._clock())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the periodic sweep."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    def __len__(self) -> int:
        return len(self._windows)
