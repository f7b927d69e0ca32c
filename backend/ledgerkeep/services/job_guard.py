"""Process-wide guards for work that touches the wallet session.

``JobSupervisor`` tracks whether a background job holds the wallet session so
foreground work can defer behind it. ``SingleFlight`` keeps at most one run of
an operation per key. Both are plain state cells: all transitions happen
without an intervening await, so they are atomic on the event loop.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, Set, TypeVar

import structlog

from ledgerkeep.config import get_settings

logger = structlog.get_logger()

T = TypeVar("T")


class JobBusyError(RuntimeError):
    """Another job already holds the guard"""


class JobSupervisor:
    """Background-job flag with staleness recovery"""

    def __init__(
        self,
        stale_after: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stale_after = stale_after
        self._clock = clock
        self._owner: Optional[str] = None
        self._started_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._owner is not None

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    def try_acquire(self, owner: str = "background") -> bool:
        """Mark a background job as running; False if one already is"""
        self.clear_stale()
        if self._owner is not None:
            return False
        self._owner = owner
        self._started_at = self._clock()
        return True

    def release(self) -> None:
        self._owner = None
        self._started_at = None

    def is_stale(self) -> bool:
        if self._owner is None or self._started_at is None:
            return False
        return self._clock() - self._started_at > self.stale_after

    def clear_stale(self) -> bool:
        """Force-clear a flag left behind by a job killed before cleanup"""
        if not self.is_stale():
            return False
        logger.warning(
            "Clearing stale background job flag",
            owner=self._owner,
            age_seconds=round(self._clock() - (self._started_at or 0), 1),
        )
        self.release()
        return True

    @asynccontextmanager
    async def background_job(self, owner: str = "background") -> AsyncIterator[None]:
        """Hold the flag for the duration of a job; always released"""
        if not self.try_acquire(owner):
            raise JobBusyError(f"Background job already running: {self._owner}")
        try:
            yield
        finally:
            self.release()

    async def wait_until_idle(self, max_wait: float = 10.0, interval: float = 0.1) -> bool:
        """Wait for a running background job; False on timeout"""
        waited = 0.0
        if self.is_running:
            logger.info("Background job detected, waiting for completion", owner=self._owner)

        while self.is_running and waited < max_wait:
            await asyncio.sleep(interval)
            waited += interval
            self.clear_stale()

        if self.is_running:
            logger.warning("Timed out waiting for background job, proceeding anyway", waited=waited)
            return False
        if waited > 0:
            logger.debug("Background job completed", waited=round(waited, 2))
        return True

    async def run_when_ready(
        self,
        callback: Callable[[], Awaitable[T]],
        max_wait: float = 10.0,
    ) -> T:
        """Run foreground work once no background job holds the wallet"""
        self.clear_stale()
        await self.wait_until_idle(max_wait)
        return await callback()


class SingleFlight:
    """At most one in-flight run per key"""

    def __init__(self):
        self._inflight: Set[str] = set()

    def try_acquire(self, key: str) -> bool:
        if key in self._inflight:
            return False
        self._inflight.add(key)
        return True

    def release(self, key: str) -> None:
        self._inflight.discard(key)

    def is_running(self, key: str) -> bool:
        return key in self._inflight


supervisor = JobSupervisor(stale_after=get_settings().background_job_stale_seconds)
