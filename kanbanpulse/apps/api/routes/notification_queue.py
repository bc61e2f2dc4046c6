from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from kanbanpulse.apps.api.deps import get_pipeline, require_admin_token
from kanbanpulse.services.pipeline import NotificationPipeline

router = APIRouter(
    prefix="/admin/notification-queue",
    tags=["notification-queue"],
    dependencies=[Depends(require_admin_token)],
)

# Upper bound for one admin send or delete request.
_MAX_SELECTION = 500


class NotificationQueueEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    recipient_id: str
    subject_id: str
    tenant_id: str | None = None
    category: str
    status: str
    change_count: int
    retry_count: int
    last_error: str | None = None
    scheduled_at: datetime
    first_seen_at: datetime
    last_seen_at: datetime
    sent_at: datetime | None = None
    updated_at: datetime | None = None
    payload: dict[str, Any] = Field(default_factory=dict, validation_alias="payload_json")


class NotificationQueueList(BaseModel):
    items: list[NotificationQueueEntry]
    count: int


class EntrySelection(BaseModel):
    ids: list[str] = Field(..., min_length=1, max_length=_MAX_SELECTION)


class SendNowResponse(BaseModel):
    sent_count: int
    failed_count: int
    errors: list[str]


class DeleteResponse(BaseModel):
    deleted_count: int


@router.get("", response_model=NotificationQueueList)
async def list_queue(
    status: Literal["pending", "claimed", "sent", "failed"] | None = Query(default=None),
    limit: int = Query(default=_MAX_SELECTION, ge=1, le=_MAX_SELECTION),
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> NotificationQueueList:
    # Newest activity first so operators see what is about to go out.
    rows = await pipeline.throttler.list_entries(status=status, limit=limit)
    items = [NotificationQueueEntry.model_validate(row) for row in rows]
    return NotificationQueueList(items=items, count=len(items))


@router.post("/send", response_model=SendNowResponse)
async def send_now(
    selection: EntrySelection,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> SendNowResponse:
    result = await pipeline.throttler.send_now(selection.ids)
    return SendNowResponse(**result)


@router.delete("", response_model=DeleteResponse)
async def delete_entries(
    selection: EntrySelection,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> DeleteResponse:
    deleted = await pipeline.throttler.delete(selection.ids)
    return DeleteResponse(deleted_count=deleted)
