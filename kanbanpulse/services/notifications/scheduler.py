from __future__ import annotations

import asyncio
import logging

from kanbanpulse.services.notifications.throttler import NotificationThrottler, ProcessResult


logger = logging.getLogger(__name__)


class NotificationScheduler:
    """Periodic driver for ``NotificationThrottler.process_due``.

    Ticks never overlap: a tick that starts while another is still running is
    skipped. The interval is re-read from the runtime config after each tick
    unless one was passed explicitly.
    """

    def __init__(
        self,
        throttler: NotificationThrottler,
        *,
        interval_s: float | None = None,
        cleanup_on_start: bool = True,
    ) -> None:
        self._throttler = throttler
        self._interval_s = interval_s
        self._cleanup_on_start = cleanup_on_start
        self._task: asyncio.Task[None] | None = None
        self._ticking = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._stopping = asyncio.Event()
        self.ticks_skipped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _next_interval(self) -> float:
        if self._interval_s is not None:
            return max(0.01, float(self._interval_s))
        try:
            return float((await self._throttler.current_config()).processor_interval_s)
        except Exception:  # noqa: BLE001 - fall back to a safe cadence when settings are unreadable.
            logger.exception("notification_scheduler_interval_failed")
            return 60.0

    async def tick(self) -> ProcessResult | None:
        # Returns None when skipped because another tick is still running.
        if self._ticking:
            self.ticks_skipped += 1
            logger.info("notification_tick_skipped reason=busy")
            return None
        self._ticking = True
        self._idle.clear()
        try:
            return await self._throttler.process_due()
        except Exception:  # noqa: BLE001 - store outages must not kill the timer.
            logger.exception("notification_tick_failed")
            return ProcessResult(errors=1)
        finally:
            self._ticking = False
            self._idle.set()

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=await self._next_interval())
            except asyncio.TimeoutError:
                await self.tick()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        if self._cleanup_on_start:
            await self._throttler.cleanup()
        # Rows that came due while the process was down go out right away.
        await self.tick()
        self._task = asyncio.create_task(self._run(), name="notification-scheduler")
        logger.info("notification_scheduler_started")

    async def stop(self, *, flush: bool = True) -> ProcessResult | None:
        """Stop the timer and optionally deliver everything still pending."""
        task, self._task = self._task, None
        # An in-flight tick finishes its batch before the flush claims anything.
        self._stopping.set()
        if task is not None:
            await task
        await self._idle.wait()
        result: ProcessResult | None = None
        if flush:
            try:
                result = await self._throttler.flush_all()
            except Exception:  # noqa: BLE001 - shutdown continues even if the final flush fails.
                logger.exception("notification_flush_failed")
        logger.info("notification_scheduler_stopped flushed=%s", flush)
        return result
