from __future__ import annotations

import argparse
import asyncio

from kanbanpulse.core.logging import configure_logging
from kanbanpulse.services.pipeline import build_pipeline


async def _run_prune(retention_days: int | None) -> None:
    # Delete sent/failed queue rows older than the retention window.
    pipeline = build_pipeline()
    deleted = await pipeline.throttler.cleanup(retention_days)
    print(f"pruned_notifications={deleted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune delivered and failed notification queue rows")
    parser.add_argument("--retention-days", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run_prune(args.retention_days))


if __name__ == "__main__":
    main()
