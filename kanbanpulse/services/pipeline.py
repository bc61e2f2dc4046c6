from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kanbanpulse.services.fanout.base import FanoutBackend
from kanbanpulse.services.fanout.factory import get_fanout_backend
from kanbanpulse.services.notifications.delivery import DeliveryExecutor
from kanbanpulse.services.notifications.notifiers import get_notifier
from kanbanpulse.services.notifications.ports import Notifier, PreferenceResolver, RecipientDirectory, Renderer
from kanbanpulse.services.notifications.preferences import DatabasePreferenceResolver
from kanbanpulse.services.notifications.rendering import TemplateRenderer
from kanbanpulse.services.notifications.scheduler import NotificationScheduler
from kanbanpulse.services.notifications.throttler import NotificationThrottler


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NotificationPipeline:
    throttler: NotificationThrottler
    executor: DeliveryExecutor
    scheduler: NotificationScheduler
    fanout: FanoutBackend

    async def start(self, *, run_scheduler: bool = True) -> None:
        await self.fanout.connect()
        if run_scheduler:
            await self.scheduler.start()

    async def shutdown(self, *, flush: bool = True) -> None:
        # Flush before closing the fanout so final sends can still publish.
        if self.scheduler.running:
            await self.scheduler.stop(flush=flush)
        await self.fanout.close()


def build_pipeline(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    notifier: Notifier | None = None,
    renderer: Renderer | None = None,
    preferences: PreferenceResolver | None = None,
    recipients: RecipientDirectory | None = None,
    fanout: FanoutBackend | None = None,
    clock: Callable[[], datetime] | None = None,
    interval_s: float | None = None,
) -> NotificationPipeline:
    """Wire the queue, executor, scheduler and fanout from settings.

    Every collaborator can be injected; anything omitted comes from the
    process-wide session factory and the configured implementations.
    """
    if session_factory is None:
        from kanbanpulse.persistence.db import SessionLocal

        session_factory = SessionLocal
    executor = DeliveryExecutor(
        session_factory=session_factory,
        notifier=notifier or get_notifier(),
        renderer=renderer or TemplateRenderer(),
        preferences=preferences or DatabasePreferenceResolver(session_factory),
        recipients=recipients,
        clock=clock,
    )
    throttler = NotificationThrottler(session_factory=session_factory, executor=executor, clock=clock)
    scheduler = NotificationScheduler(throttler, interval_s=interval_s)
    pipeline = NotificationPipeline(
        throttler=throttler,
        executor=executor,
        scheduler=scheduler,
        fanout=fanout or get_fanout_backend(),
    )
    logger.debug("notification_pipeline_built fanout=%s", pipeline.fanout.name)
    return pipeline
