from __future__ import annotations

import asyncio
import logging
import signal

from kanbanpulse.core.logging import configure_logging
from kanbanpulse.services.pipeline import build_pipeline


logger = logging.getLogger(__name__)


async def _main() -> None:
    # Run the periodic processor outside the API; SIGINT/SIGTERM stop it with a final flush.
    configure_logging()
    pipeline = build_pipeline()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await pipeline.start(run_scheduler=True)
    try:
        await stop.wait()
    finally:
        logger.info("notification_worker_stopping")
        await pipeline.shutdown(flush=True)


if __name__ == "__main__":
    asyncio.run(_main())
