from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Callable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kanbanpulse.core.errors import DeliveryTimeoutError, NotifierError
from kanbanpulse.domain.models import NotificationEntry
from kanbanpulse.persistence.repos.notification_queue import (
    as_utc,
    fold_into_pending,
    get_pending_entry,
    mark_entries_sent,
    mark_entry_failed,
    release_entry_for_retry,
    renew_claim,
)
from kanbanpulse.services.notifications.ports import (
    Notifier,
    PreferenceResolver,
    RecipientDirectory,
    Renderer,
    SendResult,
)
from kanbanpulse.services.notifications.preferences import PayloadRecipientDirectory
from kanbanpulse.services.notifications.rendering import format_time_span
from kanbanpulse.services.notifications.runtime_config import (
    ThrottleConfig,
    default_throttle_config,
    load_throttle_config,
)
from kanbanpulse.services.telemetry import increment_counter, record_send


logger = logging.getLogger(__name__)

OUTCOME_SENT = "sent"
OUTCOME_SUPPRESSED = "suppressed"
OUTCOME_RETRYING = "retrying"
OUTCOME_FAILED = "failed"
OUTCOME_LOST = "lost"

CONSOLIDATED_ACTION = "consolidated_update"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ConsolidatedNotification:
    recipient_id: str
    subject_id: str
    category: str
    payload: dict[str, Any]
    change_count: int
    first_seen_at: datetime
    last_seen_at: datetime
    span: str
    entry_ids: list[str] = field(default_factory=list)
    tenant_id: str | None = None


@dataclass(slots=True)
class DeliveryOutcome:
    status: str
    entry_ids: list[str]
    retry_count: int = 0
    error: str | None = None
    folded_into: str | None = None


def build_consolidated(group: Sequence[NotificationEntry]) -> ConsolidatedNotification:
    """Merge one coalescing key's claimed rows into a single deliverable.

    ``group`` must be sorted newest first; the first row's payload is the
    latest known state. Counts are summed and the window spans every row.
    """
    if not group:
        raise ValueError("cannot consolidate an empty group")
    latest = group[0]
    change_count = sum(max(1, int(row.change_count or 1)) for row in group)
    first_seen = min(as_utc(row.first_seen_at) for row in group)
    last_seen = max(as_utc(row.last_seen_at) for row in group)
    payload = copy.deepcopy(latest.payload_json) if isinstance(latest.payload_json, dict) else {}
    if change_count > 1:
        # Keep the latest change line; the summary replaces the per-change details.
        payload["latest_details"] = payload.get("details")
        payload["action"] = CONSOLIDATED_ACTION
        payload["details"] = f"{change_count} changes made to this task"
    return ConsolidatedNotification(
        recipient_id=latest.recipient_id,
        subject_id=latest.subject_id,
        category=latest.category,
        payload=payload,
        change_count=change_count,
        first_seen_at=first_seen,
        last_seen_at=last_seen,
        span=format_time_span(first_seen, last_seen),
        entry_ids=[row.id for row in group],
        tenant_id=latest.tenant_id,
    )


def _send_succeeded(result: SendResult | bool | None) -> tuple[bool, str | None]:
    # None means the notifier returned without raising.
    if result is None:
        return True, None
    if isinstance(result, SendResult):
        return result.success, result.detail
    return bool(result), None


class DeliveryExecutor:
    """Delivers consolidated groups and records each row's outcome.

    Every outcome write is guarded by the claim token the rows were claimed
    under, so a processor whose lease expired cannot finalize rows another
    processor has since re-claimed.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        renderer: Renderer,
        preferences: PreferenceResolver,
        recipients: RecipientDirectory | None = None,
        clock: Callable[[], datetime] | None = None,
        notifier_name: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._renderer = renderer
        self._preferences = preferences
        self._recipients = recipients or PayloadRecipientDirectory()
        self._clock = clock or _utc_now
        self._notifier_name = notifier_name or getattr(notifier, "name", type(notifier).__name__)

    async def _config(self, config: ThrottleConfig | None) -> ThrottleConfig:
        if config is not None:
            return config
        async with self._session_factory() as session:
            return await load_throttle_config(session)

    async def _transmit(self, consolidated: ConsolidatedNotification, address: str, timeout_s: float) -> None:
        # Render and send; raises on any kind of failure.
        message = self._renderer.render(
            consolidated.category,
            consolidated.payload,
            consolidated.change_count,
            consolidated.span,
        )
        started = time.monotonic()
        success = False
        try:
            try:
                result = await asyncio.wait_for(
                    self._notifier.send(address, message.subject, message.body),
                    timeout=timeout_s,
                )
            except asyncio.TimeoutError as exc:
                raise DeliveryTimeoutError(f"delivery timed out after {timeout_s:g}s") from exc
            success, detail = _send_succeeded(result)
            if not success:
                raise NotifierError(detail or "notifier reported failure")
        finally:
            record_send(
                notifier=self._notifier_name,
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )

    async def deliver(
        self,
        group: Sequence[NotificationEntry],
        config: ThrottleConfig | None = None,
    ) -> DeliveryOutcome:
        """Deliver one claimed group and persist the outcome for all of its rows.

        The lease is renewed first, so rows claimed early in a long batch are
        not re-claimed while this group is in flight. Rows whose claim already
        lapsed belong to another processor and are skipped.
        """
        group = sorted(group, key=lambda row: as_utc(row.last_seen_at), reverse=True)
        token = group[0].claim_token or ""
        config = await self._config(config)

        async with self._session_factory() as session:
            held = set(
                await renew_claim(session, entry_ids=[row.id for row in group], token=token, now=self._clock())
            )
        if len(held) < len(group):
            increment_counter("notifications.claim_lost", len(group) - len(held))
            logger.warning(
                "notification_claim_lost recipient_id=%s subject_id=%s expected=%s held=%s stage=renew",
                group[0].recipient_id,
                group[0].subject_id,
                len(group),
                len(held),
            )
            if not held:
                return DeliveryOutcome(status=OUTCOME_LOST, entry_ids=[row.id for row in group])
            group = [row for row in group if row.id in held]
        entry_ids = [row.id for row in group]
        primary = group[0]

        try:
            enabled = await self._preferences.is_enabled(primary.recipient_id, primary.category)
        except Exception as exc:  # noqa: BLE001 - preference lookups are retried like sends.
            logger.warning(
                "notification_preference_lookup_failed recipient_id=%s category=%s error=%s",
                primary.recipient_id,
                primary.category,
                exc,
            )
            return await self._record_failure(group, token=token, error=f"preference lookup failed: {exc}", config=config)

        if not enabled:
            await self._mark_sent(entry_ids, token=token)
            increment_counter("notifications.suppressed", len(entry_ids))
            logger.info(
                "notification_suppressed recipient_id=%s subject_id=%s category=%s",
                primary.recipient_id,
                primary.subject_id,
                primary.category,
            )
            return DeliveryOutcome(status=OUTCOME_SUPPRESSED, entry_ids=entry_ids)

        consolidated = build_consolidated(group)
        try:
            address = await self._recipients.resolve_address(primary.recipient_id, consolidated.payload)
            if not address:
                # Recipients without an address are unreachable; retrying would not help.
                logger.warning("notification_address_missing recipient_id=%s", primary.recipient_id)
                await self._mark_sent(entry_ids, token=token)
                increment_counter("notifications.suppressed", len(entry_ids))
                return DeliveryOutcome(status=OUTCOME_SUPPRESSED, entry_ids=entry_ids, error="no delivery address")
            await self._transmit(consolidated, address, config.delivery_timeout_s)
        except Exception as exc:  # noqa: BLE001 - any send failure becomes row state.
            logger.warning(
                "notification_delivery_failed recipient_id=%s subject_id=%s error=%s",
                primary.recipient_id,
                primary.subject_id,
                exc,
            )
            return await self._record_failure(group, token=token, error=str(exc) or type(exc).__name__, config=config)

        updated = await self._mark_sent(entry_ids, token=token)
        if updated < len(entry_ids):
            increment_counter("notifications.claim_lost", len(entry_ids) - updated)
            logger.warning(
                "notification_claim_lost recipient_id=%s subject_id=%s expected=%s updated=%s stage=mark_sent",
                primary.recipient_id,
                primary.subject_id,
                len(entry_ids),
                updated,
            )
            if not updated:
                return DeliveryOutcome(status=OUTCOME_LOST, entry_ids=entry_ids, error="claim lost before mark sent")
        increment_counter("notifications.sent")
        logger.info(
            "notification_sent recipient_id=%s subject_id=%s changes=%s rows=%s",
            primary.recipient_id,
            primary.subject_id,
            consolidated.change_count,
            len(entry_ids),
        )
        return DeliveryOutcome(
            status=OUTCOME_SENT,
            entry_ids=entry_ids,
            retry_count=max(int(row.retry_count or 0) for row in group),
        )

    async def _mark_sent(self, entry_ids: list[str], *, token: str) -> int:
        async with self._session_factory() as session:
            updated = await mark_entries_sent(session, entry_ids=entry_ids, token=token, now=self._clock())
            await session.commit()
        return updated

    async def _record_failure(
        self,
        group: Sequence[NotificationEntry],
        *,
        token: str,
        error: str,
        config: ThrottleConfig,
    ) -> DeliveryOutcome:
        # The newest row carries the merged group forward; the rest are superseded by it.
        now = self._clock()
        primary = group[0]
        others = list(group[1:])
        entry_ids = [row.id for row in group]
        retry_count = max(int(row.retry_count or 0) for row in group) + 1
        error = error[:2000]

        if retry_count >= config.max_retries:
            async with self._session_factory() as session:
                for row in group:
                    await mark_entry_failed(
                        session, entry_id=row.id, token=token, retry_count=retry_count, error=error, now=now
                    )
                await session.commit()
            increment_counter("notifications.failed")
            logger.error(
                "notification_failed recipient_id=%s subject_id=%s attempts=%s error=%s",
                primary.recipient_id,
                primary.subject_id,
                retry_count,
                error,
            )
            return DeliveryOutcome(status=OUTCOME_FAILED, entry_ids=entry_ids, retry_count=retry_count, error=error)

        change_count = sum(max(1, int(row.change_count or 1)) for row in group)
        first_seen_at = min(as_utc(row.first_seen_at) for row in group)
        retry_at = now + timedelta(minutes=config.retry_backoff_minutes)
        async with self._session_factory() as session:
            try:
                for row in others:
                    await mark_entry_failed(
                        session,
                        entry_id=row.id,
                        token=token,
                        retry_count=int(row.retry_count or 0),
                        error=f"superseded by {primary.id}: {error}",
                        now=now,
                    )
                released = await release_entry_for_retry(
                    session,
                    entry_id=primary.id,
                    token=token,
                    retry_count=retry_count,
                    error=error,
                    now=now,
                    retry_at=retry_at,
                    change_count=change_count,
                    first_seen_at=first_seen_at,
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return await self._fold_failure(
                    session,
                    group,
                    token=token,
                    error=error,
                    retry_count=retry_count,
                    change_count=change_count,
                    first_seen_at=first_seen_at,
                    now=now,
                )
        if not released:
            logger.warning("notification_claim_lost recipient_id=%s entry_id=%s", primary.recipient_id, primary.id)
            return DeliveryOutcome(status=OUTCOME_LOST, entry_ids=entry_ids, retry_count=retry_count, error=error)
        increment_counter("notifications.retry_scheduled")
        logger.info(
            "notification_retry_scheduled recipient_id=%s subject_id=%s attempt=%s retry_at=%s",
            primary.recipient_id,
            primary.subject_id,
            retry_count,
            retry_at.isoformat(),
        )
        return DeliveryOutcome(status=OUTCOME_RETRYING, entry_ids=entry_ids, retry_count=retry_count, error=error)

    async def _fold_failure(
        self,
        session: AsyncSession,
        group: Sequence[NotificationEntry],
        *,
        token: str,
        error: str,
        retry_count: int,
        change_count: int,
        first_seen_at: datetime,
        now: datetime,
    ) -> DeliveryOutcome:
        # A newer pending row appeared for the key while this group was in flight.
        primary = group[0]
        entry_ids = [row.id for row in group]
        target = await get_pending_entry(session, recipient_id=primary.recipient_id, subject_id=primary.subject_id)
        if target is None:
            raise RuntimeError(f"pending row for {primary.recipient_id}/{primary.subject_id} vanished during retry")
        fold_into_pending(
            target,
            change_count=change_count,
            first_seen_at=first_seen_at,
            retry_count=retry_count,
            now=now,
        )
        for row in group:
            await mark_entry_failed(
                session,
                entry_id=row.id,
                token=token,
                retry_count=retry_count,
                error=f"superseded by {target.id}: {error}",
                now=now,
            )
        await session.commit()
        increment_counter("notifications.retry_scheduled")
        logger.info(
            "notification_retry_folded recipient_id=%s subject_id=%s into=%s attempt=%s",
            primary.recipient_id,
            primary.subject_id,
            target.id,
            retry_count,
        )
        return DeliveryOutcome(
            status=OUTCOME_RETRYING,
            entry_ids=entry_ids,
            retry_count=retry_count,
            error=error,
            folded_into=target.id,
        )

    async def send_immediate(
        self,
        *,
        recipient_id: str,
        subject_id: str,
        category: str,
        payload: dict[str, Any],
        config: ThrottleConfig | None = None,
    ) -> bool:
        """Send a single change right away without persisting it.

        Used when the accumulation delay is zero. Failures are logged and
        dropped; there is no retry on this path.
        """
        now = self._clock()
        try:
            config = config or default_throttle_config()
            if not await self._preferences.is_enabled(recipient_id, category):
                increment_counter("notifications.suppressed")
                return False
            consolidated = ConsolidatedNotification(
                recipient_id=recipient_id,
                subject_id=subject_id,
                category=category,
                payload=copy.deepcopy(payload),
                change_count=1,
                first_seen_at=now,
                last_seen_at=now,
                span=format_time_span(now, now),
            )
            address = await self._recipients.resolve_address(recipient_id, consolidated.payload)
            if not address:
                logger.warning("notification_address_missing recipient_id=%s", recipient_id)
                return False
            await self._transmit(consolidated, address, config.delivery_timeout_s)
        except Exception:  # noqa: BLE001 - immediate sends never propagate to the caller.
            increment_counter("notifications.immediate_failed")
            logger.exception(
                "notification_immediate_failed recipient_id=%s subject_id=%s", recipient_id, subject_id
            )
            return False
        increment_counter("notifications.sent")
        logger.info("notification_sent_immediately recipient_id=%s subject_id=%s", recipient_id, subject_id)
        return True
