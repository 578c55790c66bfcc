from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import StoreError
from .proto import utcnow
from .store import MessageStore

log = logging.getLogger("chatrelay.sweeper")

DEFAULT_RETENTION = timedelta(hours=24)
DEFAULT_INTERVAL = timedelta(minutes=10)


class RetentionSweeper:
    """Periodically drops messages older than the retention window."""

    def __init__(
        self,
        store: MessageStore,
        *,
        retention: timedelta = DEFAULT_RETENTION,
        interval: timedelta = DEFAULT_INTERVAL,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.retention = retention
        self.interval = interval
        self._now = now
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> int:
        cutoff = self._now() - self.retention
        removed = await self.store.prune(cutoff)
        if removed:
            log.info("Removed %d expired message(s) older than %s", removed, cutoff.isoformat())
        return removed

    async def run(self) -> None:
        while True:
            await asyncio.sleep(max(0.0, self.interval.total_seconds()))
            try:
                await self.sweep_once()
            except StoreError:
                log.exception("Retention sweep failed; will retry in %s", self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="retention-sweeper")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


__all__ = ["RetentionSweeper", "DEFAULT_RETENTION", "DEFAULT_INTERVAL"]
