from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from kanbanpulse.core.config import get_settings
from kanbanpulse.core.logging import configure_logging
from kanbanpulse.services.pipeline import NotificationPipeline, build_pipeline

logger = logging.getLogger(__name__)


def _pipeline(ctx) -> NotificationPipeline:
    return ctx["pipeline"]


async def flush_notification_queue(ctx) -> dict[str, int]:
    # Operator-triggered: deliver everything pending regardless of schedule.
    result = await _pipeline(ctx).throttler.flush_all()
    return result.as_dict()


async def send_notification_entries(ctx, entry_ids: list[str]) -> dict:
    return await _pipeline(ctx).throttler.send_now(entry_ids)


async def prune_notification_queue(ctx) -> int:
    # Daily retention sweep; the scheduler also prunes once at startup.
    deleted = await _pipeline(ctx).throttler.cleanup()
    logger.info("notification_prune_complete deleted=%s", deleted)
    return deleted


async def _startup(ctx) -> None:
    # The worker owns the periodic processor so retries continue while the API is idle.
    configure_logging()
    pipeline = build_pipeline()
    await pipeline.start(run_scheduler=True)
    ctx["pipeline"] = pipeline


async def _shutdown(ctx) -> None:
    # Final flush before exit so nothing waits for the next deployment.
    pipeline = ctx.get("pipeline")
    if pipeline is not None:
        await pipeline.shutdown(flush=True)


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    functions = [flush_notification_queue, send_notification_entries, prune_notification_queue]
    cron_jobs = [cron(prune_notification_queue, hour={3}, minute={0}, run_at_startup=False)]
    on_startup = _startup
    on_shutdown = _shutdown
