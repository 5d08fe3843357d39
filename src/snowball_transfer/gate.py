# src/snowball_transfer/gate.py
"""
Bounded admission control for fetch jobs.

This module implements the job gate used by the fan-out stage: a counting
semaphore that caps how many source streams are open at once, combined with
an in-flight counter that lets the coordinator wait for every job it started.
"""

import asyncio
import logging

from snowball_transfer.exceptions import ConfigError

logger: logging.Logger = logging.getLogger(__name__)


class JobGate:
    """
    An `asyncio.Semaphore` with a wait-all barrier.

    `acquire()` is awaited by the coordinator before a job is launched and the
    job calls `release()` when it finishes. `wait_all()` returns once every
    job acquired since the previous `wait_all()` has released, so one gate can
    be reused batch after batch.
    """

    def __init__(self, capacity: int) -> None:
        """
        Initialize the gate.

        Args:
            capacity (int): The maximum number of jobs holding a permit at once.
        """
        if capacity <= 0:
            raise ConfigError(f"Concurrency must be > 0, got {capacity}.")
        self._capacity: int = capacity
        self._semaphore: asyncio.Semaphore = asyncio.Semaphore(capacity)
        self._in_flight: int = 0
        self._active: int = 0
        self._idle: asyncio.Event = asyncio.Event()
        self._idle.set()

    @property
    def capacity(self) -> int:
        """
        Get the concurrency limit.

        Returns:
            int: The number of permits.
        """
        return self._capacity

    @property
    def active(self) -> int:
        """
        Get the number of permits currently held.

        Returns:
            int: Jobs that acquired and have not released yet.
        """
        return self._active

    @property
    def in_flight(self) -> int:
        """
        Get the number of jobs registered and not yet finished.

        Unlike `active`, this includes callers still waiting for a permit.

        Returns:
            int: Jobs counted against the current wait-all epoch.
        """
        return self._in_flight

    async def acquire(self) -> None:
        """Waits for a permit and registers one job as in flight."""
        self._in_flight += 1
        self._idle.clear()
        try:
            await self._semaphore.acquire()
        except BaseException:
            # Never admitted, so it must not hold up wait_all().
            self._finish()
            raise
        self._active += 1

    def release(self) -> None:
        """Returns a permit and marks one job as finished."""
        if self._active <= 0:
            raise RuntimeError("JobGate released more times than acquired.")
        self._active -= 1
        self._semaphore.release()
        self._finish()

    async def wait_all(self) -> None:
        """Blocks until every acquired job has released its permit."""
        if self._in_flight:
            logger.debug(f"Waiting for {self._in_flight} in-flight job(s).")
        await self._idle.wait()

    def _finish(self) -> None:
        self._in_flight -= 1
        if self._in_flight == 0:
            self._idle.set()
