from __future__ import annotations

import argparse
import asyncio

from kanbanpulse.core.logging import configure_logging
from kanbanpulse.services.pipeline import build_pipeline


async def _run(dry_run: bool) -> None:
    pipeline = build_pipeline()
    pending = await pipeline.throttler.list_pending()
    print(f"pending_notifications={len(pending)}")
    if dry_run:
        print("dry_run=true")
        return
    # Deliver everything pending now, e.g. before a planned outage.
    result = await pipeline.throttler.flush_all()
    print(" ".join(f"{key}={value}" for key, value in result.as_dict().items()))


def main() -> None:
    parser = argparse.ArgumentParser(description="Deliver all pending notifications immediately")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run(args.dry_run))


if __name__ == "__main__":
    main()
