from __future__ import annotations

import asyncio
import logging
from typing import Any

from redis.asyncio import Redis

from kanbanpulse.services.fanout.base import FanoutBackend, Handler, Subscription, parse_tenant_channel


logger = logging.getLogger(__name__)


class RedisFanoutBackend(FanoutBackend):
    """Redis pub/sub; all-tenant subscribers use ``PSUBSCRIBE tenant:*:<channel>``."""

    name = "redis"

    def __init__(self, *, redis_url: str, client: Redis | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self._client = client
        self._pubsub: Any = None
        self._reader: asyncio.Task[None] | None = None

    async def _connect(self) -> None:
        if self._client is None:
            self._client = Redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
        await self._client.ping()
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)

    async def _close(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _publish_raw(self, name: str, message: str) -> None:
        await self._client.publish(name, message)

    async def _listen(self, key: str, *, pattern: bool = False) -> None:
        if pattern:
            await self._pubsub.psubscribe(key)
        else:
            await self._pubsub.subscribe(key)
        # The reader starts after the first subscription; get_message needs a live connection.
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop(), name="fanout-redis-reader")

    async def _unlisten(self, key: str, *, pattern: bool = False) -> None:
        if pattern:
            await self._pubsub.punsubscribe(key)
        else:
            await self._pubsub.unsubscribe(key)

    async def subscribe_all(self, channel: str, handler: Handler) -> list[Subscription]:
        subscriptions = [await self.subscribe(channel, handler)]
        if self.multi_tenant:
            subscriptions.append(await self._add_handler(f"tenant:*:{channel}", handler, pattern=True))
        return [subscription for subscription in subscriptions if subscription is not None]

    async def _read_loop(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep the reader alive across broker hiccups.
                logger.exception("fanout_redis_read_failed")
                await asyncio.sleep(1.0)
                continue
            if not message:
                continue
            kind = message.get("type")
            channel = message.get("channel")
            if kind == "pmessage":
                key = message.get("pattern")
            elif kind == "message":
                key = channel
            else:
                continue
            tenant_id, _ = parse_tenant_channel(str(channel))
            await self.dispatch(str(key), message.get("data"), tenant_id)
