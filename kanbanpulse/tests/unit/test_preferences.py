from __future__ import annotations

import pytest

from kanbanpulse.domain.models import UserNotificationPreference
from kanbanpulse.persistence.db import SessionLocal
from kanbanpulse.services.notifications.preferences import (
    DatabasePreferenceResolver,
    PayloadRecipientDirectory,
)


@pytest.mark.asyncio
async def test_database_preferences_default_to_enabled() -> None:
    async with SessionLocal() as session:
        session.add(UserNotificationPreference(user_id="u2", preferences_json={"commentAdded": False}))
        await session.commit()

    resolver = DatabasePreferenceResolver(SessionLocal)
    assert not await resolver.is_enabled("u2", "commentAdded")
    assert await resolver.is_enabled("u2", "myTaskUpdated")
    assert await resolver.is_enabled("someone-new", "commentAdded")


@pytest.mark.asyncio
async def test_database_lookup_errors_propagate() -> None:
    def broken_factory():
        raise ConnectionError("database unavailable")

    with pytest.raises(ConnectionError):
        await DatabasePreferenceResolver(broken_factory).is_enabled("u2", "commentAdded")


@pytest.mark.asyncio
async def test_recipient_address_resolution_order() -> None:
    directory = PayloadRecipientDirectory()
    assert await directory.resolve_address("u2", {"recipient_address": " bob@example.com "}) == "bob@example.com"
    assert await directory.resolve_address("u2", {"recipient": {"email": "b@example.com"}}) == "b@example.com"
    assert await directory.resolve_address("u2", {}) == "u2"
    assert await PayloadRecipientDirectory(fallback_to_id=False).resolve_address("u2", {}) is None
