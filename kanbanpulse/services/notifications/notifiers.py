from __future__ import annotations

import logging

import httpx

from kanbanpulse.core.config import get_settings
from kanbanpulse.core.errors import ConfigError, NotifierError
from kanbanpulse.services.notifications.ports import Notifier, SendResult


logger = logging.getLogger(__name__)


class LogNotifier:
    """Writes messages to the log instead of transmitting them."""

    name = "log"

    async def send(self, address: str, subject: str, body: str) -> SendResult:
        logger.info("notification_logged address=%s subject=%s body_chars=%s", address, subject, len(body))
        return SendResult(success=True, detail="logged")


class NullNotifier:
    name = "none"

    async def send(self, address: str, subject: str, body: str) -> SendResult:
        _ = (address, subject, body)
        return SendResult(success=True, detail="dropped")


class HttpNotifier:
    """POSTs rendered messages to an outbound mail relay."""

    name = "http"

    def __init__(
        self,
        *,
        url: str,
        token: str | None = None,
        timeout_ms: int = 8000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url.startswith(("http://", "https://")):
            raise ConfigError("notify_http_url must start with http:// or https://")
        self._url = url
        self._token = token
        self._timeout_s = max(0.2, timeout_ms / 1000.0)
        self._transport = transport

    async def send(self, address: str, subject: str, body: str) -> SendResult:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
            try:
                response = await client.post(
                    self._url,
                    json={"to": address, "subject": subject, "text": body},
                    headers=headers,
                )
            except httpx.HTTPError as exc:
                raise NotifierError(f"relay request failed: {exc}") from exc
        if response.status_code >= 400:
            raise NotifierError(f"relay rejected message ({response.status_code})")
        return SendResult(success=True, detail=f"http_{response.status_code}")


def get_notifier() -> Notifier:
    settings = get_settings()
    kind = (settings.notify_notifier or "log").lower()
    if kind == "log":
        return LogNotifier()
    if kind == "none":
        return NullNotifier()
    if kind == "http":
        if not settings.notify_http_url:
            raise ConfigError("NOTIFY_HTTP_URL is required when NOTIFY_NOTIFIER=http")
        return HttpNotifier(
            url=settings.notify_http_url,
            token=settings.notify_http_token,
            timeout_ms=settings.notify_http_timeout_ms,
        )
    raise ConfigError(f"Unsupported notifier: {kind}")
