from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kanbanpulse.domain.models import (
    STATUS_CLAIMED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    TERMINAL_STATUSES,
    AppSetting,
    NotificationEntry,
)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def get_pending_entry(
    session: AsyncSession, *, recipient_id: str, subject_id: str
) -> NotificationEntry | None:
    result = await session.execute(
        select(NotificationEntry).where(
            NotificationEntry.recipient_id == recipient_id,
            NotificationEntry.subject_id == subject_id,
            NotificationEntry.status == STATUS_PENDING,
        )
    )
    return result.scalar_one_or_none()


def add_pending_entry(
    session: AsyncSession,
    *,
    entry_id: str,
    recipient_id: str,
    subject_id: str,
    tenant_id: str | None,
    category: str,
    payload: dict[str, Any],
    now: datetime,
    scheduled_at: datetime,
) -> NotificationEntry:
    # First event for a key opens the accumulation window.
    entry = NotificationEntry(
        id=entry_id,
        recipient_id=recipient_id,
        subject_id=subject_id,
        tenant_id=tenant_id,
        category=category,
        payload_json=payload,
        status=STATUS_PENDING,
        scheduled_at=scheduled_at,
        first_seen_at=now,
        last_seen_at=now,
        change_count=1,
        retry_count=0,
        created_at=now,
        updated_at=now,
    )
    session.add(entry)
    return entry


def coalesce_entry(
    entry: NotificationEntry,
    *,
    category: str,
    payload: dict[str, Any],
    now: datetime,
    scheduled_at: datetime,
) -> None:
    # Last write wins for payload and category; scheduled_at never moves backwards.
    # New content restarts the retry budget of a row waiting on a retry.
    entry.payload_json = payload
    entry.category = category
    entry.change_count = int(entry.change_count or 0) + 1
    entry.retry_count = 0
    entry.last_seen_at = now
    entry.scheduled_at = max(as_utc(entry.scheduled_at), scheduled_at)
    entry.updated_at = now


async def claim_due_entries(
    session: AsyncSession,
    *,
    now: datetime,
    limit: int,
    lease_seconds: int,
    token: str,
    ignore_schedule: bool = False,
    entry_ids: Iterable[str] | None = None,
) -> list[NotificationEntry]:
    """Atomically move due rows to ``claimed`` under ``token`` and return them.

    The candidate subquery locks with ``SKIP LOCKED`` on Postgres so concurrent
    processors never claim the same row. Claims older than the lease are
    considered abandoned and become eligible again. ``ignore_schedule`` is used
    by flush and force-send paths that deliver before ``scheduled_at``.
    """
    lease_cutoff = now - timedelta(seconds=max(1, int(lease_seconds)))
    pending_clause = NotificationEntry.status == STATUS_PENDING
    if not ignore_schedule:
        pending_clause = and_(pending_clause, NotificationEntry.scheduled_at <= now)
    eligible = or_(
        pending_clause,
        and_(
            NotificationEntry.status == STATUS_CLAIMED,
            NotificationEntry.claimed_at <= lease_cutoff,
        ),
    )
    candidates = select(NotificationEntry.id).where(eligible)
    if entry_ids is not None:
        candidates = candidates.where(NotificationEntry.id.in_(list(entry_ids)))
    candidates = (
        candidates.order_by(NotificationEntry.scheduled_at.asc(), NotificationEntry.id.asc())
        .limit(max(1, int(limit)))
        .with_for_update(skip_locked=True)
        .correlate(None)
    )
    await session.execute(
        update(NotificationEntry)
        .where(NotificationEntry.id.in_(candidates), eligible)
        .values(status=STATUS_CLAIMED, claim_token=token, claimed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    result = await session.execute(
        select(NotificationEntry)
        .where(
            NotificationEntry.claim_token == token,
            NotificationEntry.status == STATUS_CLAIMED,
        )
        .order_by(NotificationEntry.scheduled_at.asc(), NotificationEntry.id.asc())
    )
    return list(result.scalars().all())


async def renew_claim(
    session: AsyncSession,
    *,
    entry_ids: list[str],
    token: str,
    now: datetime,
) -> list[str]:
    """Restart the lease on rows still held under ``token``.

    Returns the ids that are still held. Rows another processor re-claimed
    after this lease expired are left alone and missing from the result.
    """
    if not entry_ids:
        return []
    await session.execute(
        update(NotificationEntry)
        .where(
            NotificationEntry.id.in_(entry_ids),
            NotificationEntry.claim_token == token,
            NotificationEntry.status == STATUS_CLAIMED,
        )
        .values(claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    result = await session.execute(
        select(NotificationEntry.id).where(
            NotificationEntry.id.in_(entry_ids),
            NotificationEntry.claim_token == token,
            NotificationEntry.status == STATUS_CLAIMED,
        )
    )
    return list(result.scalars().all())


async def mark_entries_sent(
    session: AsyncSession,
    *,
    entry_ids: list[str],
    token: str,
    now: datetime,
) -> int:
    # Only rows still held under this claim are finalized; terminal rows are never rewritten.
    if not entry_ids:
        return 0
    result = await session.execute(
        update(NotificationEntry)
        .where(
            NotificationEntry.id.in_(entry_ids),
            NotificationEntry.claim_token == token,
            NotificationEntry.status == STATUS_CLAIMED,
        )
        .values(status=STATUS_SENT, sent_at=now, updated_at=now, claim_token=None)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def mark_entry_failed(
    session: AsyncSession,
    *,
    entry_id: str,
    token: str,
    retry_count: int,
    error: str,
    now: datetime,
) -> int:
    result = await session.execute(
        update(NotificationEntry)
        .where(
            NotificationEntry.id == entry_id,
            NotificationEntry.claim_token == token,
            NotificationEntry.status == STATUS_CLAIMED,
        )
        .values(
            status=STATUS_FAILED,
            retry_count=retry_count,
            last_error=error,
            updated_at=now,
            claim_token=None,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def release_entry_for_retry(
    session: AsyncSession,
    *,
    entry_id: str,
    token: str,
    retry_count: int,
    error: str,
    now: datetime,
    retry_at: datetime,
    change_count: int | None = None,
    first_seen_at: datetime | None = None,
) -> int:
    # Return a claimed row to pending for the next eligible tick.
    # Raises IntegrityError when a newer pending row already holds the key.
    values: dict[str, Any] = {
        "status": STATUS_PENDING,
        "retry_count": retry_count,
        "last_error": error,
        "scheduled_at": retry_at,
        "updated_at": now,
        "claim_token": None,
        "claimed_at": None,
    }
    if change_count is not None:
        values["change_count"] = change_count
    if first_seen_at is not None:
        values["first_seen_at"] = first_seen_at
    result = await session.execute(
        update(NotificationEntry)
        .where(
            NotificationEntry.id == entry_id,
            NotificationEntry.claim_token == token,
            NotificationEntry.status == STATUS_CLAIMED,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def fold_into_pending(
    target: NotificationEntry,
    *,
    change_count: int,
    first_seen_at: datetime,
    retry_count: int,
    now: datetime,
) -> None:
    # Merge a retrying group into a newer pending row for the same key; the newer payload wins.
    target.change_count = int(target.change_count or 0) + max(0, int(change_count))
    target.first_seen_at = min(as_utc(target.first_seen_at), as_utc(first_seen_at))
    target.retry_count = max(int(target.retry_count or 0), int(retry_count))
    target.updated_at = now


async def get_entries(session: AsyncSession, entry_ids: Iterable[str]) -> list[NotificationEntry]:
    ids = list(entry_ids)
    if not ids:
        return []
    result = await session.execute(select(NotificationEntry).where(NotificationEntry.id.in_(ids)))
    return list(result.scalars().all())


async def list_entries(
    session: AsyncSession,
    *,
    status: str | None = None,
    limit: int = 500,
) -> list[NotificationEntry]:
    stmt = select(NotificationEntry)
    if status:
        stmt = stmt.where(NotificationEntry.status == status)
    result = await session.execute(
        stmt.order_by(NotificationEntry.updated_at.desc(), NotificationEntry.id.desc()).limit(
            max(1, min(int(limit), 500))
        )
    )
    return list(result.scalars().all())


async def list_pending_entries(session: AsyncSession) -> list[NotificationEntry]:
    result = await session.execute(
        select(NotificationEntry)
        .where(NotificationEntry.status == STATUS_PENDING)
        .order_by(NotificationEntry.scheduled_at.asc(), NotificationEntry.id.asc())
    )
    return list(result.scalars().all())


async def count_pending_entries(session: AsyncSession, *, recipient_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(NotificationEntry)
        .where(
            NotificationEntry.recipient_id == recipient_id,
            NotificationEntry.status == STATUS_PENDING,
        )
    )
    return int(result.scalar() or 0)


async def delete_entries(session: AsyncSession, entry_ids: Iterable[str]) -> int:
    ids = list(entry_ids)
    if not ids:
        return 0
    result = await session.execute(
        delete(NotificationEntry)
        .where(NotificationEntry.id.in_(ids))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def purge_terminal_entries(session: AsyncSession, *, older_than: datetime) -> int:
    # Retention only ever removes sent/failed rows.
    result = await session.execute(
        delete(NotificationEntry)
        .where(
            NotificationEntry.status.in_(TERMINAL_STATUSES),
            NotificationEntry.updated_at < older_than,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def get_app_settings(session: AsyncSession, keys: Iterable[str]) -> dict[str, str]:
    result = await session.execute(select(AppSetting).where(AppSetting.key.in_(list(keys))))
    return {row.key: row.value for row in result.scalars().all() if row.value is not None}


async def set_app_setting(session: AsyncSession, *, key: str, value: str | None) -> AppSetting:
    row = await session.get(AppSetting, key)
    if row is None:
        row = AppSetting(key=key, value=value)
        session.add(row)
    else:
        row.value = value
    return row
