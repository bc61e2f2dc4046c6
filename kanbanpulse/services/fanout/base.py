from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
import inspect
import json
import logging
from typing import Any, Awaitable, Callable

from kanbanpulse.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Handlers receive the decoded payload and the tenant it was published for.
Handler = Callable[[dict[str, Any], str | None], Awaitable[None] | None]

TENANT_PREFIX = "tenant"
REFETCH_MESSAGE = "Update available - fetch latest from API"
_COUNTABLE_KEYS = ("activities", "items", "changes")


def tenant_channel(channel: str, tenant_id: str | None, *, multi_tenant: bool) -> str:
    # Tenant namespacing applies only in multi-tenant mode and only when a tenant is known.
    if multi_tenant and tenant_id:
        return f"{TENANT_PREFIX}:{tenant_id}:{channel}"
    return channel


def parse_tenant_channel(name: str) -> tuple[str | None, str]:
    # Inverse of tenant_channel for unsanitized names.
    parts = name.split(":", 2)
    if len(parts) == 3 and parts[0] == TENANT_PREFIX and parts[1]:
        return parts[1], parts[2]
    return None, name


@dataclass(frozen=True)
class PayloadSizePolicy:
    """Replaces payloads above ``max_payload_bytes`` with a refetch notice.

    Fanout messages are liveness hints; consumers reload state from the API,
    so a small notice is always an acceptable substitute.
    """

    max_payload_bytes: int | None = None

    def fallback_payload(self, original: dict[str, Any]) -> dict[str, Any]:
        notice: dict[str, Any] = {
            "type": "refetch",
            "message": REFETCH_MESSAGE,
            "timestamp": original.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        }
        for key in _COUNTABLE_KEYS:
            value = original.get(key)
            if isinstance(value, list):
                notice["count"] = len(value)
                break
        if original.get("tenant_id"):
            notice["tenant_id"] = original["tenant_id"]
        return notice

    def apply(self, payload: dict[str, Any]) -> tuple[str, bool]:
        # Returns the encoded message and whether it was replaced.
        encoded = json.dumps(payload, default=str, separators=(",", ":"))
        if self.max_payload_bytes is None or len(encoded.encode("utf-8")) <= self.max_payload_bytes:
            return encoded, False
        return json.dumps(self.fallback_payload(payload), default=str, separators=(",", ":")), True


class Subscription:
    def __init__(self, backend: FanoutBackend, key: str, handler: Handler) -> None:
        self.backend = backend
        self.key = key
        self.handler = handler

    async def unsubscribe(self) -> None:
        await self.backend.remove_handler(self.key, self.handler)

    def __repr__(self) -> str:
        return f"Subscription(key={self.key!r}, backend={self.backend.name!r})"


class FanoutBackend(ABC):
    """Publish/subscribe transport for live-update hints.

    Public methods never raise: failures are logged and counted, and calls on
    an unconnected backend are skipped with a warning.
    """

    name = "base"

    def __init__(self, *, multi_tenant: bool = False, policy: PayloadSizePolicy | None = None) -> None:
        self.multi_tenant = multi_tenant
        self.policy = policy or PayloadSizePolicy()
        self.connected = False
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    @abstractmethod
    async def _connect(self) -> None:
        ...

    @abstractmethod
    async def _close(self) -> None:
        ...

    @abstractmethod
    async def _publish_raw(self, name: str, message: str) -> None:
        ...

    @abstractmethod
    async def _listen(self, key: str, *, pattern: bool = False) -> None:
        ...

    @abstractmethod
    async def _unlisten(self, key: str, *, pattern: bool = False) -> None:
        ...

    def channel_name(self, channel: str, tenant_id: str | None = None) -> str:
        return tenant_channel(channel, tenant_id, multi_tenant=self.multi_tenant)

    def publish_targets(
        self, channel: str, payload: dict[str, Any], tenant_id: str | None
    ) -> list[tuple[str, dict[str, Any]]]:
        return [(self.channel_name(channel, tenant_id), payload)]

    async def connect(self) -> bool:
        try:
            await self._connect()
        except Exception:  # noqa: BLE001 - the app keeps running without live updates.
            self.connected = False
            logger.exception("fanout_connect_failed backend=%s", self.name)
            return False
        self.connected = True
        logger.info("fanout_connected backend=%s", self.name)
        return True

    async def close(self) -> None:
        try:
            await self._close()
        except Exception:  # noqa: BLE001 - shutdown continues on transport errors.
            logger.exception("fanout_close_failed backend=%s", self.name)
        finally:
            self.connected = False
            self._handlers.clear()

    async def publish(self, channel: str, payload: dict[str, Any], tenant_id: str | None = None) -> bool:
        if not self.connected:
            logger.warning("fanout_publish_skipped backend=%s channel=%s reason=not_connected", self.name, channel)
            return False
        try:
            for name, body in self.publish_targets(channel, payload, tenant_id):
                message, replaced = self.policy.apply(body)
                if replaced:
                    increment_counter("fanout.truncated")
                    logger.warning(
                        "fanout_payload_replaced backend=%s channel=%s max_bytes=%s",
                        self.name,
                        name,
                        self.policy.max_payload_bytes,
                    )
                await self._publish_raw(name, message)
        except Exception:  # noqa: BLE001 - live updates are best effort.
            increment_counter("fanout.errors")
            logger.exception("fanout_publish_failed backend=%s channel=%s", self.name, channel)
            return False
        increment_counter("fanout.published")
        return True

    async def _add_handler(self, key: str, handler: Handler, *, pattern: bool = False) -> Subscription | None:
        if not self.connected:
            logger.warning("fanout_subscribe_skipped backend=%s key=%s reason=not_connected", self.name, key)
            return None
        first = not self._handlers.get(key)
        self._handlers[key].append(handler)
        if first:
            try:
                await self._listen(key, pattern=pattern)
            except Exception:  # noqa: BLE001 - subscription failures degrade to no live updates.
                self._handlers.pop(key, None)
                increment_counter("fanout.errors")
                logger.exception("fanout_subscribe_failed backend=%s key=%s", self.name, key)
                return None
            logger.info("fanout_subscribed backend=%s key=%s", self.name, key)
        return Subscription(self, key, handler)

    async def remove_handler(self, key: str, handler: Handler) -> None:
        handlers = self._handlers.get(key)
        if not handlers or handler not in handlers:
            return
        handlers.remove(handler)
        if handlers:
            return
        self._handlers.pop(key, None)
        if not self.connected:
            return
        try:
            await self._unlisten(key, pattern="*" in key)
        except Exception:  # noqa: BLE001 - a stale listener only costs dropped messages.
            logger.exception("fanout_unsubscribe_failed backend=%s key=%s", self.name, key)

    async def subscribe(self, channel: str, handler: Handler, tenant_id: str | None = None) -> Subscription | None:
        return await self._add_handler(self.channel_name(channel, tenant_id), handler)

    async def subscribe_all(self, channel: str, handler: Handler) -> list[Subscription]:
        """Receive ``channel`` for every tenant, including ones not seen yet."""
        subscription = await self.subscribe(channel, handler)
        return [subscription] if subscription is not None else []

    def subscribed_keys(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, key: str, message: str | bytes | dict[str, Any], tenant_id: str | None) -> None:
        # Handler errors are isolated per handler.
        if isinstance(message, dict):
            payload = message
        else:
            try:
                payload = json.loads(message)
            except (TypeError, ValueError):
                logger.warning("fanout_message_undecodable backend=%s key=%s", self.name, key)
                return
            if not isinstance(payload, dict):
                payload = {"value": payload}
        for handler in list(self._handlers.get(key, ())):
            try:
                result = handler(payload, tenant_id)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001 - one bad handler must not starve the others.
                increment_counter("fanout.handler_errors")
                logger.exception("fanout_handler_failed backend=%s key=%s", self.name, key)


class NullFanoutBackend(FanoutBackend):
    """Accepts and drops everything; used when live updates are disabled."""

    name = "none"

    async def _connect(self) -> None:
        return None

    async def _close(self) -> None:
        return None

    async def _publish_raw(self, name: str, message: str) -> None:
        return None

    async def _listen(self, key: str, *, pattern: bool = False) -> None:
        return None

    async def _unlisten(self, key: str, *, pattern: bool = False) -> None:
        return None
