from __future__ import annotations

from fnmatch import fnmatchcase

from kanbanpulse.services.fanout.base import FanoutBackend, Handler, Subscription, parse_tenant_channel


class InMemoryFanoutBackend(FanoutBackend):
    """Single-process fanout with redis-style glob patterns; delivery is inline."""

    name = "memory"

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.published: list[tuple[str, str]] = []

    async def _connect(self) -> None:
        return None

    async def _close(self) -> None:
        self.published.clear()

    async def _listen(self, key: str, *, pattern: bool = False) -> None:
        return None

    async def _unlisten(self, key: str, *, pattern: bool = False) -> None:
        return None

    async def _publish_raw(self, name: str, message: str) -> None:
        self.published.append((name, message))
        tenant_id, _ = parse_tenant_channel(name)
        for key in list(self._handlers):
            if key == name or ("*" in key and fnmatchcase(name, key)):
                await self.dispatch(key, message, tenant_id)

    async def subscribe_all(self, channel: str, handler: Handler) -> list[Subscription]:
        subscriptions = [await self.subscribe(channel, handler)]
        if self.multi_tenant:
            subscriptions.append(await self._add_handler(f"tenant:*:{channel}", handler, pattern=True))
        return [subscription for subscription in subscriptions if subscription is not None]
