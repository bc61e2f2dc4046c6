from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kanbanpulse.domain.models import UserNotificationPreference
from kanbanpulse.services.notifications.rendering import (
    CATEGORY_ADDED_AS_COLLABORATOR,
    CATEGORY_COLLABORATING_TASK_UPDATED,
    CATEGORY_COMMENT_ADDED,
    CATEGORY_MY_TASK_UPDATED,
    CATEGORY_REQUESTER_TASK_CREATED,
    CATEGORY_REQUESTER_TASK_UPDATED,
    CATEGORY_TASK_ASSIGNED,
    CATEGORY_WATCHED_TASK_UPDATED,
)


# Users without stored preferences receive every category.
DEFAULT_PREFERENCES: dict[str, bool] = {
    CATEGORY_TASK_ASSIGNED: True,
    CATEGORY_MY_TASK_UPDATED: True,
    CATEGORY_WATCHED_TASK_UPDATED: True,
    CATEGORY_ADDED_AS_COLLABORATOR: True,
    CATEGORY_COLLABORATING_TASK_UPDATED: True,
    CATEGORY_COMMENT_ADDED: True,
    CATEGORY_REQUESTER_TASK_CREATED: True,
    CATEGORY_REQUESTER_TASK_UPDATED: True,
}


def _resolve_flag(preferences: dict[str, Any], category: str) -> bool:
    value = preferences.get(category, DEFAULT_PREFERENCES.get(category, True))
    return bool(value)


class StaticPreferenceResolver:
    def __init__(self, overrides: dict[str, dict[str, bool]] | None = None) -> None:
        self._overrides = {user_id: dict(flags) for user_id, flags in (overrides or {}).items()}

    def set(self, recipient_id: str, category: str, enabled: bool) -> None:
        self._overrides.setdefault(recipient_id, {})[category] = enabled

    async def is_enabled(self, recipient_id: str, category: str) -> bool:
        return _resolve_flag(self._overrides.get(recipient_id, {}), category)


class DatabasePreferenceResolver:
    """Reads per-user category flags from ``user_notification_preferences``.

    Lookup errors propagate so the delivery executor treats them as a
    transient failure and retries instead of silently suppressing.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def is_enabled(self, recipient_id: str, category: str) -> bool:
        async with self._session_factory() as session:
            row = await session.get(UserNotificationPreference, recipient_id)
        if row is None or not isinstance(row.preferences_json, dict):
            return _resolve_flag({}, category)
        return _resolve_flag(row.preferences_json, category)


class PayloadRecipientDirectory:
    """Resolves the delivery address from the payload snapshot.

    Looks at ``recipient_address``, then ``recipient.email``, and finally falls
    back to the recipient id itself when ``fallback_to_id`` is set.
    """

    def __init__(self, *, fallback_to_id: bool = True) -> None:
        self._fallback_to_id = fallback_to_id

    async def resolve_address(self, recipient_id: str, payload: dict[str, Any]) -> str | None:
        address = payload.get("recipient_address")
        if isinstance(address, str) and address.strip():
            return address.strip()
        recipient = payload.get("recipient")
        if isinstance(recipient, dict):
            email = recipient.get("email")
            if isinstance(email, str) and email.strip():
                return email.strip()
        return recipient_id if self._fallback_to_id else None
