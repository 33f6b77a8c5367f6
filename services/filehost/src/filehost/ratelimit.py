"""Per-client upload budget with a renewing window.

Every accepted upload pushes the client's window to ``now + window`` and adds
its size to the bytes used in that window. Once a client has been idle for a
full window its usage counts as zero again.
"""

from __future__ import annotations

import enum
import logging
import math
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from .errors import RateLimitExceeded, RequestTooLarge

logger = logging.getLogger(__name__)


class Verdict(enum.Enum):
    ALLOW = "allow"
    TOO_LARGE = "too_large"
    BUDGET_EXCEEDED = "budget_exceeded"


@dataclass(frozen=True)
class RateLimitEntry:
    window_expires_at: float
    bytes_used: int


@dataclass(frozen=True)
class RateDecision:
    verdict: Verdict
    bytes_used: int = 0
    remaining_bytes: int | None = None
    wait_minutes: int | None = None

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.ALLOW


class RateLimiter:
    def __init__(
        self,
        max_request_bytes: int,
        budget_bytes: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_request_bytes = max_request_bytes
        self.budget_bytes = budget_bytes
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, client_key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(client_key)
            if lock is None:
                lock = self._locks[client_key] = threading.Lock()
            return lock

    @contextmanager
    def _hold(self, client_key: str) -> Iterator[None]:
        while True:
            lock = self._lock_for(client_key)
            lock.acquire()
            with self._guard:
                current = self._locks.get(client_key)
            if current is lock:
                break
            # evicted while we were waiting
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _bytes_used(self, client_key: str, now: float) -> tuple[int, RateLimitEntry | None]:
        entry = self._entries.get(client_key)
        if entry is None or now >= entry.window_expires_at:
            return 0, entry
        return entry.bytes_used, entry

    def check(self, client_key: str, request_bytes: int) -> RateDecision:
        if request_bytes >= self.max_request_bytes:
            return RateDecision(Verdict.TOO_LARGE)

        now = self._clock()
        used, entry = self._bytes_used(client_key, now)
        if used + request_bytes >= self.budget_bytes:
            wait = 0
            if entry is not None:
                wait = math.ceil(max(entry.window_expires_at - now, 0) / 60)
            return RateDecision(
                Verdict.BUDGET_EXCEEDED,
                bytes_used=used,
                remaining_bytes=self.budget_bytes - used,
                wait_minutes=wait,
            )
        return RateDecision(Verdict.ALLOW, bytes_used=used)

    def record(self, client_key: str, request_bytes: int) -> RateLimitEntry:
        with self._hold(client_key):
            return self._record(client_key, request_bytes)

    def _record(self, client_key: str, request_bytes: int) -> RateLimitEntry:
        now = self._clock()
        used, _ = self._bytes_used(client_key, now)
        entry = RateLimitEntry(
            window_expires_at=now + self.window_seconds,
            bytes_used=used + request_bytes,
        )
        self._entries[client_key] = entry
        return entry

    @contextmanager
    def admit(self, client_key: str, request_bytes: int) -> Iterator[RateDecision]:
        """Hold the client's lock across check, commit and record.

        Raises ``RequestTooLarge`` or ``RateLimitExceeded`` when the upload is
        rejected. Usage is recorded only if the ``with`` body finishes
        without raising.
        """
        # oversized requests never touch per-client state
        if request_bytes >= self.max_request_bytes:
            raise RequestTooLarge(self.max_request_bytes)

        with self._hold(client_key):
            decision = self.check(client_key, request_bytes)
            if decision.verdict is Verdict.BUDGET_EXCEEDED:
                raise RateLimitExceeded(
                    self.budget_bytes,
                    remaining_bytes=decision.remaining_bytes,
                    wait_minutes=decision.wait_minutes,
                )
            yield decision
            self._record(client_key, request_bytes)

    def get(self, client_key: str) -> RateLimitEntry | None:
        return self._entries.get(client_key)

    def evict_expired(self) -> int:
        now = self._clock()
        evicted = 0
        with self._guard:
            # locks of clients that never got an entry are dropped too
            for key in list(self._entries.keys() | self._locks.keys()):
                entry = self._entries.get(key)
                if entry is not None and now < entry.window_expires_at:
                    continue
                lock = self._locks.get(key)
                # a held lock means an upload for this client is in flight
                if lock is not None and not lock.acquire(blocking=False):
                    continue
                stale = self._entries.pop(key, None)
                self._locks.pop(key, None)
                if lock is not None:
                    lock.release()
                if stale is not None:
                    evicted += 1
        if evicted:
            logger.info("Evicted %d stale rate limit entries", evicted)
        return evicted

    def __len__(self) -> int:
        return len(self._entries)
