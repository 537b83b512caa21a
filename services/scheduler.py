"""Periodic and event-driven sync triggers."""
from __future__ import annotations

import asyncio
from typing import Optional, Set

from core.logs import ensure_logger
from core.settings import SYNC
from services.synchronizer import (
    TRIGGER_CONNECTIVITY,
    TRIGGER_TIMER,
    Synchronizer,
)


class SyncScheduler:
    """Runs a pass every ``interval`` seconds and on demand.

    Triggers arriving while a pass is running are absorbed by the
    synchronizer's single-flight guard. ``trigger`` is safe to call from
    synchronous callbacks as long as an event loop is running.
    """

    def __init__(
        self,
        synchronizer: Synchronizer,
        *,
        interval: float = SYNC.interval_sec,
        poll_when_idle: bool = SYNC.poll_when_idle,
    ) -> None:
        self.synchronizer = synchronizer
        self.interval = interval
        self.poll_when_idle = poll_when_idle
        self.logger = ensure_logger("scheduler")
        self._timer: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        if self.running:
            return
        self._timer = asyncio.get_running_loop().create_task(self._loop())
        self.logger.info("Sync timer started (every %ss)", self.interval)

    async def _loop(self) -> None:
        first = True
        while True:
            await asyncio.sleep(self.interval)
            if not (first or self._should_tick()):
                continue
            first = False
            task = self.trigger(TRIGGER_TIMER)
            if task is not None:
                # stopping the timer must not cancel a pass half way through
                await asyncio.shield(task)

    def _should_tick(self) -> bool:
        if self.poll_when_idle:
            return True
        return self.synchronizer.queue.count() > 0

    def trigger(self, reason: str = TRIGGER_CONNECTIVITY) -> Optional[asyncio.Task]:
        """Schedule a pass on the running loop; ``None`` when there is no loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning("No running event loop, %s trigger dropped", reason)
            return None
        task = loop.create_task(self.synchronizer.run_pass(reason))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def on_connectivity_restored(self, _event) -> None:
        self.trigger(TRIGGER_CONNECTIVITY)

    async def stop(self) -> None:
        """Cancel the timer and wait for passes already started."""
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        self.logger.info("Sync timer stopped")


__all__ = ["SyncScheduler"]
