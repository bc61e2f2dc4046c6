from __future__ import annotations

import json

import httpx
import pytest

from kanbanpulse.core.config import get_settings
from kanbanpulse.core.errors import ConfigError, NotifierError
from kanbanpulse.services.notifications.notifiers import (
    HttpNotifier,
    LogNotifier,
    NullNotifier,
    get_notifier,
)


@pytest.mark.asyncio
async def test_http_notifier_posts_message_with_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"queued": True})

    notifier = HttpNotifier(url="https://relay.example.com/send", token="secret", transport=httpx.MockTransport(handler))
    result = await notifier.send("bob@example.com", "Subject", "Body")

    assert result.success
    assert result.detail == "http_202"
    [request] = seen
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {"to": "bob@example.com", "subject": "Subject", "text": "Body"}


@pytest.mark.asyncio
async def test_http_notifier_raises_on_rejection() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    notifier = HttpNotifier(url="http://relay.local/send", transport=transport)
    with pytest.raises(NotifierError, match="503"):
        await notifier.send("bob@example.com", "Subject", "Body")


@pytest.mark.asyncio
async def test_http_notifier_wraps_transport_errors() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    notifier = HttpNotifier(url="http://relay.local/send", transport=httpx.MockTransport(refuse))
    with pytest.raises(NotifierError, match="relay request failed"):
        await notifier.send("bob@example.com", "Subject", "Body")


def test_http_notifier_requires_http_url() -> None:
    with pytest.raises(ConfigError):
        HttpNotifier(url="smtp://relay.local")


def test_get_notifier_follows_settings(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_NOTIFIER", "log")
    get_settings.cache_clear()
    assert isinstance(get_notifier(), LogNotifier)

    monkeypatch.setenv("NOTIFY_NOTIFIER", "none")
    get_settings.cache_clear()
    assert isinstance(get_notifier(), NullNotifier)

    monkeypatch.setenv("NOTIFY_NOTIFIER", "http")
    get_settings.cache_clear()
    with pytest.raises(ConfigError):
        get_notifier()

    monkeypatch.setenv("NOTIFY_HTTP_URL", "https://relay.example.com/send")
    get_settings.cache_clear()
    assert isinstance(get_notifier(), HttpNotifier)

    monkeypatch.setenv("NOTIFY_NOTIFIER", "carrier-pigeon")
    get_settings.cache_clear()
    with pytest.raises(ConfigError):
        get_notifier()


@pytest.mark.asyncio
async def test_log_notifier_always_succeeds() -> None:
    assert (await LogNotifier().send("bob@example.com", "Subject", "Body")).success
