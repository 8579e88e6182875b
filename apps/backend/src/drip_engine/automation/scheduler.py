"""Polling scheduler that advances due enrollments on a fixed interval."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..logging_config import get_logger
from .schema import Enrollment, EnrollmentStatus, utc_now
from .store import EnrollmentStore

logger = get_logger(__name__)

DueCheck = Callable[[Enrollment, datetime], bool]


def default_due_check(enrollment: Enrollment, now: datetime) -> bool:
    return enrollment.is_due(now)


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class SchedulerLoop:
    """Two-state (stopped/running) loop around a periodic scan of active enrollments."""

    def __init__(
        self,
        store: EnrollmentStore,
        process: Callable[[str], Awaitable[Any]],
        *,
        interval_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
        due_check: DueCheck = default_due_check,
    ):
        self.store = store
        self.process = process
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.due_check = due_check
        self._state = SchedulerState.STOPPED
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    def start(self) -> bool:
        """Begin periodic scanning. Must be called from a running event loop."""
        if self._state is SchedulerState.RUNNING:
            logger.info("Scheduler already running")
            return False
        self._task = asyncio.get_running_loop().create_task(self._run(), name="drip-scheduler")
        self._state = SchedulerState.RUNNING
        logger.info("Scheduler started (every %.1fs)", self.interval_seconds)
        return True

    async def stop(self) -> bool:
        if self._state is SchedulerState.STOPPED:
            return False
        self._state = SchedulerState.STOPPED
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        logger.info("Scheduler stopped")
        return True

    async def tick(self) -> int:
        """Run one scan. Returns the number of enrollments handed to process()."""
        now = self.clock()
        processed = 0
        for enrollment in self.store.list(status=EnrollmentStatus.ACTIVE):
            if not self.due_check(enrollment, now):
                continue
            processed += 1
            try:
                await self.process(enrollment.id)
            except Exception:
                logger.exception("Error processing enrollment %s", enrollment.id)
        return processed

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler scan failed")
            await asyncio.sleep(self.interval_seconds)
