from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

import asyncpg

from kanbanpulse.services.fanout.base import FanoutBackend, Handler, PayloadSizePolicy, Subscription


logger = logging.getLogger(__name__)

# pg_notify payloads are capped just below 8 kB by the server.
POSTGRES_MAX_PAYLOAD_BYTES = 8000
_RECONNECT_DELAY_S = 5.0
_INVALID_CHANNEL_CHARS = re.compile(r"[^A-Za-z0-9_$]")
FAN_IN_PREFIX = "all_tenants"


def sanitize_channel(name: str) -> str:
    # LISTEN/NOTIFY channel names are identifiers; everything else becomes an underscore.
    return _INVALID_CHANNEL_CHARS.sub("_", name)


def fan_in_channel(channel: str) -> str:
    # Sanitized tenant channels always start with "tenant_", so this never collides with one.
    return sanitize_channel(f"{FAN_IN_PREFIX}:{channel}")


def asyncpg_dsn(url: str) -> str:
    # Accept SQLAlchemy-style URLs so one DATABASE_URL configures both layers.
    return re.sub(r"^postgresql\+\w+://", "postgresql://", url)


class PostgresFanoutBackend(FanoutBackend):
    """LISTEN/NOTIFY fanout on a dedicated listener connection.

    Postgres cannot pattern-listen, so every tenant publish is mirrored onto
    a fan-in channel (``all_tenants_<channel>``) with ``tenant_id`` in the
    payload. Only all-tenant subscribers listen there, so plain subscribers
    of the bare channel never see tenant traffic. The tenant is read from
    the payload, which also covers tenants not seen before.
    """

    name = "postgres"

    def __init__(self, *, dsn: str, **kwargs: Any) -> None:
        kwargs.setdefault("policy", PayloadSizePolicy(POSTGRES_MAX_PAYLOAD_BYTES))
        super().__init__(**kwargs)
        self._dsn = asyncpg_dsn(dsn)
        self._listener: Any = None
        self._pool: Any = None
        # sanitized channel -> tenant it belongs to (None for bare channels)
        self._channel_tenants: dict[str, str | None] = {}
        self._fan_in_keys: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._reconnect_task: asyncio.Task[None] | None = None
        self.known_tenants: set[str] = set()

    def channel_name(self, channel: str, tenant_id: str | None = None) -> str:
        name = sanitize_channel(super().channel_name(channel, tenant_id))
        if self.multi_tenant and tenant_id:
            self._channel_tenants[name] = tenant_id
        return name

    def publish_targets(
        self, channel: str, payload: dict[str, Any], tenant_id: str | None
    ) -> list[tuple[str, dict[str, Any]]]:
        targets = [(self.channel_name(channel, tenant_id), payload)]
        if self.multi_tenant and tenant_id:
            targets.append((fan_in_channel(channel), {**payload, "tenant_id": tenant_id}))
        return targets

    async def _connect(self) -> None:
        self._listener = await asyncpg.connect(self._dsn)
        self._listener.add_termination_listener(self._on_terminated)
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self._dsn, min_size=1, max_size=5)

    async def _close(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        for task in list(self._tasks):
            task.cancel()
        listener, self._listener = self._listener, None
        if listener is not None and not listener.is_closed():
            for key in list(self._handlers):
                await listener.remove_listener(key, self._on_notification)
            await listener.close()
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()

    async def _publish_raw(self, name: str, message: str) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute("SELECT pg_notify($1, $2)", name, message)

    async def _listen(self, key: str, *, pattern: bool = False) -> None:
        await self._listener.add_listener(key, self._on_notification)

    async def _unlisten(self, key: str, *, pattern: bool = False) -> None:
        if self._listener is not None and not self._listener.is_closed():
            await self._listener.remove_listener(key, self._on_notification)

    async def subscribe_all(self, channel: str, handler: Handler) -> list[Subscription]:
        keys = [sanitize_channel(channel)]
        if self.multi_tenant:
            keys.insert(0, fan_in_channel(channel))
            self._fan_in_keys.add(keys[0])
        subscriptions = []
        for key in keys:
            subscription = await self._add_handler(key, handler)
            if subscription is not None:
                subscriptions.append(subscription)
        return subscriptions

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        # asyncpg invokes listeners synchronously; dispatch runs as a tracked task.
        tenant_id = self._channel_tenants.get(channel)
        if tenant_id is None and channel in self._fan_in_keys:
            try:
                decoded = json.loads(payload)
            except ValueError:
                decoded = None
            if isinstance(decoded, dict) and decoded.get("tenant_id"):
                tenant_id = str(decoded["tenant_id"])
                self.known_tenants.add(tenant_id)
        task = asyncio.get_running_loop().create_task(self.dispatch(channel, payload, tenant_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_terminated(self, connection: Any) -> None:
        if not self.connected:
            return
        self.connected = False
        logger.warning("fanout_postgres_listener_lost reconnect_in_s=%s", _RECONNECT_DELAY_S)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        while not self.connected:
            await asyncio.sleep(_RECONNECT_DELAY_S)
            try:
                await self._connect()
                for key in list(self._handlers):
                    await self._listen(key)
            except Exception:  # noqa: BLE001 - retry until the database is back.
                logger.exception("fanout_postgres_reconnect_failed")
                continue
            self.connected = True
            logger.info("fanout_postgres_reconnected channels=%s", len(self._handlers))
