"""
Periodic retention check for the local notification store.
Runs once at start, then every interval, as a background asyncio task.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from herald.core.config import settings
from herald.services.local_store import LocalNotificationStore

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class PruneScheduler:

    def __init__(
        self,
        store: LocalNotificationStore,
        *,
        interval: float | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._interval = interval or settings.PRUNE_CHECK_INTERVAL_SECONDS
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="herald-prune-scheduler")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> bool:
        """One retention check. Failures are logged; the schedule keeps going."""
        try:
            pruned = await self._store.check_and_prune()
        except Exception:
            logger.exception("Local notification prune failed")
            return False
        if pruned:
            logger.info("Local notification store pruned")
        return pruned

    async def _run(self) -> None:
        while True:
            await self.run_once()
            await self._sleep(self._interval)
