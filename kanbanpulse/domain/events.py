from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, TypedDict


class RefetchPayload(TypedDict, total=False):
    type: Literal["refetch"]
    message: str
    timestamp: str
    count: int


@dataclass(frozen=True)
class ActivityEvent:
    # One CRUD mutation as seen by the notification layer.
    actor_id: str
    action: str
    subject_id: str
    category: str
    timestamp: datetime
    recipient_ids: tuple[str, ...] = ()
    change_details: dict[str, Any] = field(default_factory=dict)
    tenant_id: str | None = None
