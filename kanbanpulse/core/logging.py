from __future__ import annotations

import logging

from kanbanpulse.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; later calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    if not _configured:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
        _configured = True
    root.setLevel(resolved)
    # Third-party clients are chatty at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
