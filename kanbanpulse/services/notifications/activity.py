from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from kanbanpulse.domain.events import ActivityEvent
from kanbanpulse.services.notifications.throttler import NotificationThrottler

if TYPE_CHECKING:
    from kanbanpulse.services.fanout.base import FanoutBackend


logger = logging.getLogger(__name__)

# Default live-update channel for task mutations.
TASK_CHANGES_CHANNEL = "task_changes"


def build_payload(event: ActivityEvent) -> dict[str, Any]:
    # Render-ready snapshot; details win over the generic action verb.
    payload = dict(event.change_details)
    payload.setdefault("action", event.action)
    payload.setdefault("actor", {"id": event.actor_id})
    payload["subject_id"] = event.subject_id
    payload["timestamp"] = event.timestamp.isoformat()
    return payload


def recipients_for(event: ActivityEvent) -> list[str]:
    # The actor never notifies themselves; duplicates keep first-seen order.
    seen: set[str] = set()
    recipients: list[str] = []
    for recipient_id in event.recipient_ids:
        if not recipient_id or recipient_id == event.actor_id or recipient_id in seen:
            continue
        seen.add(recipient_id)
        recipients.append(recipient_id)
    return recipients


async def route_activity(
    event: ActivityEvent,
    *,
    throttler: NotificationThrottler,
    fanout: FanoutBackend | None = None,
    channel: str = TASK_CHANGES_CHANNEL,
) -> int:
    """Queue notifications for an activity event and publish a live-update hint.

    Returns the number of recipients queued. Neither step raises.
    """
    payload = build_payload(event)
    recipients = recipients_for(event)
    for recipient_id in recipients:
        await throttler.enqueue(
            recipient_id,
            event.subject_id,
            event.category,
            payload,
            tenant_id=event.tenant_id,
        )
    if fanout is not None:
        await fanout.publish(
            channel,
            {
                "type": "task_changed",
                "subject_id": event.subject_id,
                "action": event.action,
                "timestamp": payload["timestamp"],
            },
            tenant_id=event.tenant_id,
        )
    logger.debug(
        "activity_routed subject_id=%s action=%s recipients=%s", event.subject_id, event.action, len(recipients)
    )
    return len(recipients)
