from __future__ import annotations

import os

# The queue store and settings are bound at import time; point them at sqlite first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FANOUT_BACKEND", "none")
os.environ.setdefault("NOTIFY_NOTIFIER", "none")

import pytest

from kanbanpulse.core.config import get_settings
from kanbanpulse.domain.models import Base
from kanbanpulse.persistence.db import SessionLocal, engine
from kanbanpulse.services.notifications.delivery import DeliveryExecutor
from kanbanpulse.services.notifications.preferences import StaticPreferenceResolver
from kanbanpulse.services.notifications.rendering import TemplateRenderer
from kanbanpulse.services.notifications.throttler import NotificationThrottler
from kanbanpulse.services.telemetry import reset_telemetry
from kanbanpulse.tests.utils.fakes import FakeClock, RecordingNotifier


@pytest.fixture(autouse=True)
async def fresh_database() -> None:
    # Each test gets an empty in-memory schema; disposing the engine drops the database.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    reset_telemetry()
    yield
    # Tests that monkeypatch env must not leak cached settings into later tests.
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def preferences() -> StaticPreferenceResolver:
    return StaticPreferenceResolver()


@pytest.fixture
def executor(notifier: RecordingNotifier, preferences: StaticPreferenceResolver, clock: FakeClock) -> DeliveryExecutor:
    return DeliveryExecutor(
        session_factory=SessionLocal,
        notifier=notifier,
        renderer=TemplateRenderer(),
        preferences=preferences,
        clock=clock,
    )


@pytest.fixture
def throttler(executor: DeliveryExecutor, clock: FakeClock) -> NotificationThrottler:
    return NotificationThrottler(session_factory=SessionLocal, executor=executor, clock=clock)
