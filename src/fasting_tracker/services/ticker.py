"""Cancelable periodic refresh of the fasting timer."""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from fasting_tracker.domain.fasting import FastingTimer
from fasting_tracker.services.store import AppStore

_logger = logging.getLogger(__name__)


@dataclass
class FastingTicker:
    """Publishes a timer snapshot every interval while a session is open.

    The owner starts it when the timer view appears and stops it when the view
    goes away; it also stops by itself once no session is open.
    """

    store: AppStore
    on_tick: Callable[[FastingTimer], None]
    interval_seconds: float = 1.0
    _task: asyncio.Task[None] | None = field(default=None, init=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking; a no-op when already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="fasting-ticker")

    async def stop(self) -> None:
        """Cancel the periodic task and wait for it to finish."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            timer = self.store.get_fasting_timer()
            if timer is None:
                _logger.info("No open fasting session; ticker stopped")
                return
            try:
                self.on_tick(timer)
            except Exception:
                _logger.exception("Timer tick callback failed")
            await asyncio.sleep(self.interval_seconds)
