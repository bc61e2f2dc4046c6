from __future__ import annotations

from kanbanpulse.core.config import get_settings
from kanbanpulse.core.errors import FanoutConfigError
from kanbanpulse.services.fanout.base import FanoutBackend, NullFanoutBackend, PayloadSizePolicy
from kanbanpulse.services.fanout.memory import InMemoryFanoutBackend


def get_fanout_backend(kind: str | None = None) -> FanoutBackend:
    settings = get_settings()
    backend = (kind or settings.fanout_backend or "none").lower()
    multi_tenant = bool(settings.multi_tenant)

    if backend == "none":
        return NullFanoutBackend(multi_tenant=multi_tenant)
    if backend == "memory":
        return InMemoryFanoutBackend(multi_tenant=multi_tenant)
    if backend == "redis":
        # Imported lazily so deployments without the broker client can run other backends.
        from kanbanpulse.services.fanout.redis_backend import RedisFanoutBackend

        return RedisFanoutBackend(
            redis_url=settings.redis_url,
            multi_tenant=multi_tenant,
            policy=PayloadSizePolicy(settings.fanout_redis_max_payload_bytes),
        )
    if backend == "postgres":
        from kanbanpulse.services.fanout.postgres_backend import PostgresFanoutBackend

        return PostgresFanoutBackend(
            dsn=settings.fanout_postgres_dsn or settings.database_url,
            multi_tenant=multi_tenant,
            policy=PayloadSizePolicy(settings.fanout_postgres_max_payload_bytes),
        )

    raise FanoutConfigError(f"Unsupported fanout backend: {backend}")
