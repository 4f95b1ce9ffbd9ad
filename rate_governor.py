"""
rate_governor.py — outbound call governor for a remote provider.

Three limits are enforced together:
  • concurrency  — at most max_concurrent permits outstanding
  • spacing      — admitted calls start at least min_spacing seconds apart
  • quota        — at most `quota` admissions per window; the quota refills
                   to full at each window boundary

acquire() never fails because of a limit; it suspends the caller until a
slot is available. One instance is owned by the primary provider (see
providers/manager.py) — there is no module-level singleton.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

logger = logging.getLogger(__name__)


@dataclass
class Permit:
    """Proof of admission. Hand it back to release() exactly once."""
    permit_id: int
    acquired_at: float
    released: bool = False


class RateGovernor:

    def __init__(
        self,
        max_concurrent: int = 3,
        min_spacing: float = 0.15,
        quota: int = 100,
        window_secs: float = 60.0,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if quota < 1:
            raise ValueError("quota must be >= 1")
        if min_spacing < 0 or window_secs <= 0:
            raise ValueError("min_spacing must be >= 0 and window_secs > 0")

        self.max_concurrent = max_concurrent
        self.min_spacing = min_spacing
        self.quota = quota
        self.window_secs = window_secs

        self._slots = asyncio.Semaphore(max_concurrent)
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)

        # acquire() updates these under self._lock; release() has no await points
        self._remaining = quota
        self._window_start = time.monotonic()
        self._last_start: float | None = None
        self._in_flight = 0
        self._peak_in_flight = 0
        self._total_admitted = 0

        logger.info(
            "RateGovernor: %d concurrent, %.0fms spacing, %d calls / %.0fs",
            max_concurrent, min_spacing * 1000, quota, window_secs,
        )

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        return self._peak_in_flight

    @property
    def remaining_quota(self) -> int:
        return self._remaining

    def stats(self) -> dict:
        return {
            "in_flight": self._in_flight,
            "peak_in_flight": self._peak_in_flight,
            "remaining_quota": self._remaining,
            "total_admitted": self._total_admitted,
            "max_concurrent": self.max_concurrent,
            "quota": self.quota,
        }

    # ── Admission ─────────────────────────────────────────────────────────────

    def _refill(self, now: float) -> None:
        """Jump the window forward to the boundary containing `now`."""
        elapsed = now - self._window_start
        if elapsed >= self.window_secs:
            windows = int(elapsed // self.window_secs)
            self._window_start += windows * self.window_secs
            self._remaining = self.quota

    async def acquire(self) -> Permit:
        await self._slots.acquire()
        try:
            async with self._lock:
                while True:
                    now = time.monotonic()
                    self._refill(now)

                    if self._remaining <= 0:
                        wait = self._window_start + self.window_secs - now
                        logger.info("Rate governor: quota exhausted, waiting %.2fs", wait)
                        await asyncio.sleep(max(wait, 0.0))
                        continue

                    if self._last_start is not None:
                        wait = self._last_start + self.min_spacing - now
                        if wait > 0:
                            await asyncio.sleep(wait)
                            continue

                    self._remaining -= 1
                    self._last_start = now
                    self._in_flight += 1
                    self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
                    self._total_admitted += 1
                    return Permit(permit_id=next(self._ids), acquired_at=now)
        except BaseException:
            # Cancelled while waiting: give the concurrency slot back
            self._slots.release()
            raise

    def release(self, permit: Permit) -> None:
        if permit.released:
            raise RuntimeError(f"Permit {permit.permit_id} already released")
        permit.released = True
        self._in_flight -= 1
        self._slots.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[Permit]:
        permit = await self.acquire()
        try:
            yield permit
        finally:
            self.release(permit)
