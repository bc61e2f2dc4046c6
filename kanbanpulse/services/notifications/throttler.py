from __future__ import annotations

from collections import OrderedDict
import copy
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, Sequence
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kanbanpulse.core.config import get_settings
from kanbanpulse.domain.models import NotificationEntry
from kanbanpulse.persistence.repos.notification_queue import (
    add_pending_entry,
    as_utc,
    claim_due_entries,
    coalesce_entry,
    count_pending_entries,
    delete_entries,
    get_pending_entry,
    list_entries,
    list_pending_entries,
    purge_terminal_entries,
)
from kanbanpulse.services.notifications.delivery import (
    OUTCOME_FAILED,
    OUTCOME_LOST,
    OUTCOME_RETRYING,
    OUTCOME_SENT,
    OUTCOME_SUPPRESSED,
    DeliveryExecutor,
)
from kanbanpulse.services.notifications.runtime_config import ThrottleConfig, load_throttle_config
from kanbanpulse.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

# Insert conflicts on the pending-key index retry as an update at most this often.
_ENQUEUE_ATTEMPTS = 2


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_entry_id() -> str:
    return uuid4().hex


def _snapshot(payload: dict[str, Any]) -> dict[str, Any]:
    # Detach the caller's dict and coerce values (datetimes, UUIDs) to JSON-safe forms.
    return json.loads(json.dumps(copy.deepcopy(payload), default=str))


@dataclass(slots=True)
class ProcessResult:
    claimed: int = 0
    groups: int = 0
    sent: int = 0
    suppressed: int = 0
    retrying: int = 0
    failed: int = 0
    lost: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def group_entries(entries: Iterable[NotificationEntry]) -> list[list[NotificationEntry]]:
    """Group claimed rows by coalescing key, each group newest first.

    Groups keep the order in which their first row was claimed, which is
    ``scheduled_at`` ascending.
    """
    grouped: OrderedDict[tuple[str, str], list[NotificationEntry]] = OrderedDict()
    for entry in entries:
        grouped.setdefault(entry.coalescing_key, []).append(entry)
    return [
        sorted(rows, key=lambda row: as_utc(row.last_seen_at), reverse=True)
        for rows in grouped.values()
    ]


class NotificationThrottler:
    """Debounced, coalescing notification queue backed by ``notification_queue``."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        executor: DeliveryExecutor,
        clock: Callable[[], datetime] | None = None,
        config_loader: Callable[[AsyncSession], Awaitable[ThrottleConfig]] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._executor = executor
        self._clock = clock or _utc_now
        self._config_loader = config_loader or load_throttle_config
        self._id_factory = id_factory or _new_entry_id

    @property
    def executor(self) -> DeliveryExecutor:
        return self._executor

    async def current_config(self) -> ThrottleConfig:
        async with self._session_factory() as session:
            return await self._config_loader(session)

    async def enqueue(
        self,
        recipient_id: str,
        subject_id: str,
        category: str,
        payload: dict[str, Any],
        *,
        tenant_id: str | None = None,
    ) -> None:
        """Record one change for ``(recipient_id, subject_id)``.

        Opens a new accumulation window or extends the pending one. With a
        zero delay the change is sent immediately instead. Never raises; the
        caller's request must not fail because a notification could not be
        queued.
        """
        try:
            if get_settings().demo_mode:
                logger.debug("notification_enqueue_skipped_demo recipient_id=%s", recipient_id)
                return
            snapshot = _snapshot(payload)
            config = await self.current_config()
            if config.delay_minutes <= 0:
                await self._executor.send_immediate(
                    recipient_id=recipient_id,
                    subject_id=subject_id,
                    category=category,
                    payload=snapshot,
                    config=config,
                )
                return
            await self._write_pending(
                recipient_id=recipient_id,
                subject_id=subject_id,
                category=category,
                payload=snapshot,
                tenant_id=tenant_id,
                delay_minutes=config.delay_minutes,
            )
        except Exception:  # noqa: BLE001 - enqueue is fire-and-forget for the caller.
            increment_counter("notifications.enqueue_failed")
            logger.exception(
                "notification_enqueue_failed recipient_id=%s subject_id=%s", recipient_id, subject_id
            )

    async def _write_pending(
        self,
        *,
        recipient_id: str,
        subject_id: str,
        category: str,
        payload: dict[str, Any],
        tenant_id: str | None,
        delay_minutes: int,
    ) -> None:
        for attempt in range(_ENQUEUE_ATTEMPTS):
            now = self._clock()
            scheduled_at = now + timedelta(minutes=delay_minutes)
            async with self._session_factory() as session:
                existing = await get_pending_entry(session, recipient_id=recipient_id, subject_id=subject_id)
                if existing is not None:
                    coalesce_entry(existing, category=category, payload=payload, now=now, scheduled_at=scheduled_at)
                    await session.commit()
                    increment_counter("notifications.coalesced")
                    logger.debug(
                        "notification_coalesced recipient_id=%s subject_id=%s changes=%s",
                        recipient_id,
                        subject_id,
                        existing.change_count,
                    )
                    return
                add_pending_entry(
                    session,
                    entry_id=self._id_factory(),
                    recipient_id=recipient_id,
                    subject_id=subject_id,
                    tenant_id=tenant_id,
                    category=category,
                    payload=payload,
                    now=now,
                    scheduled_at=scheduled_at,
                )
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent enqueue inserted the pending row first; update it instead.
                    await session.rollback()
                    logger.debug(
                        "notification_enqueue_conflict recipient_id=%s subject_id=%s attempt=%s",
                        recipient_id,
                        subject_id,
                        attempt + 1,
                    )
                    continue
                increment_counter("notifications.enqueued")
                logger.debug(
                    "notification_enqueued recipient_id=%s subject_id=%s scheduled_at=%s",
                    recipient_id,
                    subject_id,
                    scheduled_at.isoformat(),
                )
                return
        raise RuntimeError(f"could not write pending row for {recipient_id}/{subject_id}")

    async def process_due(self) -> ProcessResult:
        """Claim due rows and deliver them one coalescing group at a time."""
        async with self._session_factory() as session:
            config = await self._config_loader(session)
            entries = await claim_due_entries(
                session,
                now=self._clock(),
                limit=config.batch_size,
                lease_seconds=config.claim_lease_s,
                token=uuid4().hex,
            )
        return await self._deliver_claimed(entries, config)

    async def flush_all(self) -> ProcessResult:
        """Deliver every pending row now, ignoring ``scheduled_at``.

        Only rows pending when the flush starts are considered, so changes
        arriving during shutdown cannot keep the flush running.
        """
        total = ProcessResult()
        async with self._session_factory() as session:
            pending_ids = [entry.id for entry in await list_pending_entries(session)]
        if not pending_ids:
            return total
        config = await self.current_config()
        for start in range(0, len(pending_ids), config.batch_size):
            batch_ids = pending_ids[start : start + config.batch_size]
            async with self._session_factory() as session:
                entries = await claim_due_entries(
                    session,
                    now=self._clock(),
                    limit=len(batch_ids),
                    lease_seconds=config.claim_lease_s,
                    token=uuid4().hex,
                    ignore_schedule=True,
                    entry_ids=batch_ids,
                )
            result = await self._deliver_claimed(entries, config)
            for name, value in result.as_dict().items():
                setattr(total, name, getattr(total, name) + value)
        logger.info("notification_flush_complete %s", " ".join(f"{k}={v}" for k, v in total.as_dict().items()))
        return total

    async def send_now(self, entry_ids: Sequence[str]) -> dict[str, Any]:
        """Force-deliver selected pending rows regardless of their schedule."""
        config = await self.current_config()
        async with self._session_factory() as session:
            entries = await claim_due_entries(
                session,
                now=self._clock(),
                limit=max(1, len(entry_ids)),
                lease_seconds=config.claim_lease_s,
                token=uuid4().hex,
                ignore_schedule=True,
                entry_ids=list(entry_ids),
            )
        sent_count = 0
        failed_count = 0
        errors: list[str] = []
        claimed_ids = {entry.id for entry in entries}
        for missing in entry_ids:
            if missing not in claimed_ids:
                errors.append(f"{missing}: not pending")
        for group in group_entries(entries):
            try:
                outcome = await self._executor.deliver(group, config)
            except Exception as exc:  # noqa: BLE001 - report per-group failures to the operator.
                logger.exception("notification_force_send_failed entry_id=%s", group[0].id)
                failed_count += len(group)
                errors.append(f"{group[0].id}: {exc}")
                continue
            if outcome.status in (OUTCOME_SENT, OUTCOME_SUPPRESSED):
                sent_count += len(outcome.entry_ids)
            else:
                failed_count += len(outcome.entry_ids)
                errors.append(f"{group[0].id}: {outcome.error or outcome.status}")
        return {"sent_count": sent_count, "failed_count": failed_count, "errors": errors}

    async def _deliver_claimed(
        self, entries: Sequence[NotificationEntry], config: ThrottleConfig
    ) -> ProcessResult:
        result = ProcessResult(claimed=len(entries))
        groups = group_entries(entries)
        result.groups = len(groups)
        for group in groups:
            # One group's failure never aborts the batch.
            try:
                outcome = await self._executor.deliver(group, config)
            except Exception:  # noqa: BLE001 - keep draining the batch while surfacing errors in logs.
                result.errors += 1
                logger.exception(
                    "notification_group_failed recipient_id=%s subject_id=%s",
                    group[0].recipient_id,
                    group[0].subject_id,
                )
                continue
            if outcome.status == OUTCOME_SENT:
                result.sent += 1
            elif outcome.status == OUTCOME_SUPPRESSED:
                result.suppressed += 1
            elif outcome.status == OUTCOME_RETRYING:
                result.retrying += 1
            elif outcome.status == OUTCOME_FAILED:
                result.failed += 1
            elif outcome.status == OUTCOME_LOST:
                result.lost += 1
        if result.claimed:
            logger.info(
                "notification_batch_processed %s",
                " ".join(f"{k}={v}" for k, v in result.as_dict().items()),
            )
        return result

    async def cleanup(self, retention_days: int | None = None) -> int:
        # Retention sweep for sent/failed rows; never raises.
        try:
            if retention_days is None:
                retention_days = (await self.current_config()).retention_days
            cutoff = self._clock() - timedelta(days=max(1, int(retention_days)))
            async with self._session_factory() as session:
                deleted = await purge_terminal_entries(session, older_than=cutoff)
                await session.commit()
        except Exception:  # noqa: BLE001 - retention must not break scheduler start.
            logger.exception("notification_cleanup_failed")
            return 0
        if deleted:
            logger.info("notification_cleanup_complete deleted=%s retention_days=%s", deleted, retention_days)
        return deleted

    async def delete(self, entry_ids: Sequence[str]) -> int:
        async with self._session_factory() as session:
            deleted = await delete_entries(session, entry_ids)
            await session.commit()
        return deleted

    async def pending_count(self, recipient_id: str) -> int:
        async with self._session_factory() as session:
            return await count_pending_entries(session, recipient_id=recipient_id)

    async def list_pending(self) -> list[NotificationEntry]:
        async with self._session_factory() as session:
            entries = await list_pending_entries(session)
        set_gauge("notifications.pending", len(entries))
        return entries

    async def list_entries(self, *, status: str | None = None, limit: int = 500) -> list[NotificationEntry]:
        async with self._session_factory() as session:
            return await list_entries(session, status=status, limit=limit)
