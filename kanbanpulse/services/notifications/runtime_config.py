from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math

from sqlalchemy.ext.asyncio import AsyncSession

from kanbanpulse.core.config import get_settings
from kanbanpulse.persistence.repos.notification_queue import get_app_settings


logger = logging.getLogger(__name__)

_LEASE_MARGIN_S = 60

# app_settings key -> (ThrottleConfig field, minimum accepted value)
SETTING_KEYS: dict[str, tuple[str, int]] = {
    "NOTIFICATION_DELAY": ("delay_minutes", 0),
    "NOTIFICATION_MAX_RETRIES": ("max_retries", 1),
    "NOTIFICATION_RETRY_BACKOFF": ("retry_backoff_minutes", 0),
    "NOTIFICATION_BATCH_SIZE": ("batch_size", 1),
    "NOTIFICATION_RETENTION_DAYS": ("retention_days", 1),
    "NOTIFICATION_PROCESSOR_INTERVAL": ("processor_interval_s", 1),
}


@dataclass(frozen=True)
class ThrottleConfig:
    delay_minutes: int
    max_retries: int
    retry_backoff_minutes: int
    processor_interval_s: int
    batch_size: int
    retention_days: int
    claim_lease_s: int
    delivery_timeout_s: float


def default_throttle_config() -> ThrottleConfig:
    # Env/.env defaults, clamped so a bad value can never disable retries or batching.
    settings = get_settings()
    delivery_timeout_s = max(0.1, float(settings.notify_delivery_timeout_s))
    # A lease renewed per group must outlive one send.
    min_lease_s = math.ceil(delivery_timeout_s) + _LEASE_MARGIN_S
    claim_lease_s = int(settings.notify_claim_lease_s)
    if claim_lease_s < min_lease_s:
        logger.warning(
            "notification_claim_lease_raised configured=%s effective=%s", claim_lease_s, min_lease_s
        )
        claim_lease_s = min_lease_s
    return ThrottleConfig(
        delay_minutes=max(0, int(settings.notify_delay_minutes)),
        max_retries=max(1, int(settings.notify_max_retries)),
        retry_backoff_minutes=max(0, int(settings.notify_retry_backoff_minutes)),
        processor_interval_s=max(1, int(settings.notify_processor_interval_s)),
        batch_size=max(1, int(settings.notify_batch_size)),
        retention_days=max(1, int(settings.notify_retention_days)),
        claim_lease_s=claim_lease_s,
        delivery_timeout_s=delivery_timeout_s,
    )


def apply_overrides(base: ThrottleConfig, raw: dict[str, str]) -> ThrottleConfig:
    # Invalid or out-of-range overrides fall back to the base value.
    updates: dict[str, int] = {}
    for key, (field_name, minimum) in SETTING_KEYS.items():
        value = raw.get(key)
        if value is None:
            continue
        try:
            parsed = int(str(value).strip())
        except ValueError:
            logger.warning("notification_setting_invalid key=%s value=%r", key, value)
            continue
        if parsed < minimum:
            logger.warning("notification_setting_out_of_range key=%s value=%s minimum=%s", key, parsed, minimum)
            continue
        updates[field_name] = parsed
    return replace(base, **updates) if updates else base


async def load_throttle_config(session: AsyncSession) -> ThrottleConfig:
    """Resolve the effective config for one enqueue or tick.

    Operator overrides in ``app_settings`` win over env defaults and are read
    on every call, so changes apply from the next tick without a restart.
    """
    base = default_throttle_config()
    raw = await get_app_settings(session, SETTING_KEYS.keys())
    return apply_overrides(base, raw)
