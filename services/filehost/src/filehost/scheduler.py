"""Periodic sweep of expired uploads and stale rate limit entries."""

from __future__ import annotations

import asyncio
import logging

from .ratelimit import RateLimiter
from .storage import EphemeralStore

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Runs the store sweep and rate limit eviction at start and then on a
    fixed interval.

    The scans run in a worker thread so request handling on the event loop
    is never blocked by them.
    """

    def __init__(
        self,
        store: EphemeralStore,
        limiter: RateLimiter,
        interval_seconds: float = 600,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        if self._running:
            logger.warning("SweepScheduler is already running")
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("SweepScheduler started, sweeping every %d seconds", self.interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Sweep did not stop gracefully, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            finally:
                self._task = None
        logger.info("SweepScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self.run_once()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> int:
        removed = 0
        try:
            removed = await asyncio.to_thread(self.store.sweep)
        except Exception as e:
            logger.exception("Sweep of expired files failed: %s", e)
        try:
            await asyncio.to_thread(self.limiter.evict_expired)
        except Exception as e:
            logger.exception("Rate limit eviction failed: %s", e)
        return removed

    @property
    def is_running(self) -> bool:
        return self._running
