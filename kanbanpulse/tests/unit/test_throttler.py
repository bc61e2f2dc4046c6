from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from kanbanpulse.core.config import get_settings
from kanbanpulse.domain.models import STATUS_FAILED, STATUS_PENDING, STATUS_SENT
from kanbanpulse.persistence.db import SessionLocal
from kanbanpulse.persistence.repos.notification_queue import add_pending_entry, as_utc
from kanbanpulse.services.notifications import throttler as throttler_module
from kanbanpulse.services.notifications.throttler import NotificationThrottler, group_entries
from kanbanpulse.services.telemetry import counters_snapshot
from kanbanpulse.tests.utils.fakes import all_entries, set_setting, task_payload


@pytest.mark.asyncio
async def test_rapid_changes_coalesce_into_one_message(throttler, notifier, clock) -> None:
    start = clock()
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload(details="changed status"))
    clock.advance(minutes=1)
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload(details="changed priority"))
    clock.advance(minutes=1)
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload(details="changed due date"))

    rows = await all_entries()
    assert len(rows) == 1
    entry = rows[0]
    assert entry.status == STATUS_PENDING
    assert entry.change_count == 3
    assert entry.payload_json["details"] == "changed due date"
    # The window is extended by every change.
    assert as_utc(entry.scheduled_at) == start + timedelta(minutes=32)
    assert as_utc(entry.first_seen_at) == start

    clock.advance(minutes=29)
    result = await throttler.process_due()
    assert result.claimed == 0
    assert notifier.calls == []

    clock.advance(minutes=1)
    result = await throttler.process_due()
    assert result.sent == 1
    assert len(notifier.calls) == 1
    message = notifier.calls[0]
    assert "(3 changes)" in message.subject
    assert "3 changes to Fix login bug over 2 minutes." in message.body
    assert "changed due date" in message.body

    rows = await all_entries()
    assert [row.status for row in rows] == [STATUS_SENT]
    assert rows[0].sent_at is not None


@pytest.mark.asyncio
async def test_nothing_is_sent_before_the_delay(throttler, notifier, clock) -> None:
    await throttler.enqueue("u2", "task-1", "newTaskAssigned", task_payload())
    clock.advance(minutes=29, seconds=59)
    result = await throttler.process_due()
    assert result.claimed == 0
    assert notifier.calls == []


@pytest.mark.asyncio
async def test_zero_delay_sends_immediately_without_a_row(throttler, notifier) -> None:
    await set_setting("NOTIFICATION_DELAY", "0")
    await throttler.enqueue("u2", "task-1", "commentAdded", task_payload(comment="Looks good"))

    assert len(notifier.calls) == 1
    assert "Looks good" in notifier.calls[0].body
    assert await all_entries() == []


@pytest.mark.asyncio
async def test_immediate_send_failure_is_dropped(throttler, notifier) -> None:
    await set_setting("NOTIFICATION_DELAY", "0")
    notifier.outcomes = [RuntimeError("relay down")]
    await throttler.enqueue("u2", "task-1", "commentAdded", task_payload())

    assert len(notifier.calls) == 1
    assert await all_entries() == []
    assert counters_snapshot()["notifications.immediate_failed"] == 1


@pytest.mark.asyncio
async def test_demo_mode_skips_enqueue(throttler, monkeypatch) -> None:
    monkeypatch.setenv("DEMO_MODE", "true")
    get_settings.cache_clear()
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    assert await all_entries() == []


@pytest.mark.asyncio
async def test_enqueue_never_raises_on_store_errors(executor, clock) -> None:
    def broken_factory():
        raise RuntimeError("database unavailable")

    throttler = NotificationThrottler(session_factory=broken_factory, executor=executor, clock=clock)
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    assert counters_snapshot()["notifications.enqueue_failed"] == 1


@pytest.mark.asyncio
async def test_payload_snapshot_is_detached_from_caller(throttler) -> None:
    payload = task_payload()
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", payload)
    payload["details"] = "mutated after enqueue"

    rows = await all_entries()
    assert rows[0].payload_json["details"] == "changed status"


@pytest.mark.asyncio
async def test_scheduled_time_never_moves_backwards(throttler, clock) -> None:
    await set_setting("NOTIFICATION_DELAY", "60")
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    first_due = as_utc((await all_entries())[0].scheduled_at)

    # Operator shortens the delay; the pending window keeps its later deadline.
    await set_setting("NOTIFICATION_DELAY", "5")
    clock.advance(minutes=1)
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())

    entry = (await all_entries())[0]
    assert as_utc(entry.scheduled_at) == first_due
    assert entry.change_count == 2


@pytest.mark.asyncio
async def test_new_change_restarts_retry_budget(throttler, notifier, clock) -> None:
    notifier.outcomes = [False, False]
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload(details="first"))
    clock.advance(minutes=30)
    await throttler.process_due()
    clock.advance(minutes=5)
    await throttler.process_due()
    assert (await all_entries())[0].retry_count == 2

    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload(details="second"))
    entry = (await all_entries())[0]
    assert entry.status == STATUS_PENDING
    assert entry.retry_count == 0
    assert entry.change_count == 2
    assert entry.last_error == "notifier reported failure"

    # The new content gets a full set of attempts instead of failing on the next miss.
    notifier.outcomes = [False]
    clock.advance(minutes=30)
    assert (await throttler.process_due()).retrying == 1
    clock.advance(minutes=5)
    assert (await throttler.process_due()).sent == 1
    assert len(notifier.calls) == 4


@pytest.mark.asyncio
async def test_separate_keys_are_not_coalesced(throttler) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    await throttler.enqueue("u2", "task-2", "myTaskUpdated", task_payload())
    await throttler.enqueue("u3", "task-1", "myTaskUpdated", task_payload())

    assert len(await all_entries()) == 3
    assert await throttler.pending_count("u2") == 2
    assert await throttler.pending_count("u3") == 1


@pytest.mark.asyncio
async def test_insert_conflict_falls_back_to_update(throttler, monkeypatch) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    real_lookup = throttler_module.get_pending_entry
    calls = {"count": 0}

    async def stale_lookup(session, **kwargs):
        # First lookup misses the row another writer just inserted.
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return await real_lookup(session, **kwargs)

    monkeypatch.setattr(throttler_module, "get_pending_entry", stale_lookup)
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload(details="second"))

    rows = await all_entries()
    assert len(rows) == 1
    assert rows[0].change_count == 2
    assert rows[0].payload_json["details"] == "second"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_pending_key_is_unique_in_the_store(clock) -> None:
    now = clock()
    async with SessionLocal() as session:
        for entry_id in ("a", "b"):
            add_pending_entry(
                session,
                entry_id=entry_id,
                recipient_id="u2",
                subject_id="task-1",
                tenant_id=None,
                category="myTaskUpdated",
                payload={},
                now=now,
                scheduled_at=now,
            )
        with pytest.raises(IntegrityError):
            await session.commit()


@pytest.mark.asyncio
async def test_new_window_opens_after_delivery(throttler, notifier, clock) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    clock.advance(minutes=30)
    await throttler.process_due()

    clock.advance(minutes=1)
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload(details="reopened"))
    rows = await all_entries()
    statuses = sorted(row.status for row in rows)
    assert statuses == [STATUS_PENDING, STATUS_SENT]
    sent = next(row for row in rows if row.status == STATUS_SENT)
    assert sent.change_count == 1


@pytest.mark.asyncio
async def test_flush_all_sends_everything_pending(throttler, notifier) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    await throttler.enqueue("u3", "task-2", "watchedTaskUpdated", task_payload())

    result = await throttler.flush_all()
    assert result.sent == 2
    assert len(notifier.calls) == 2
    assert {row.status for row in await all_entries()} == {STATUS_SENT}


@pytest.mark.asyncio
async def test_send_now_reports_counts(throttler, notifier) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    entry_id = (await all_entries())[0].id
    notifier.outcomes = [False]

    result = await throttler.send_now([entry_id, "missing"])
    assert result["sent_count"] == 0
    assert result["failed_count"] == 1
    assert any(error.startswith("missing") for error in result["errors"])


@pytest.mark.asyncio
async def test_cleanup_removes_only_old_terminal_rows(throttler, clock) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    await throttler.flush_all()
    clock.advance(days=31)
    await throttler.enqueue("u3", "task-2", "myTaskUpdated", task_payload())

    deleted = await throttler.cleanup()
    assert deleted == 1
    rows = await all_entries()
    assert [row.status for row in rows] == [STATUS_PENDING]


@pytest.mark.asyncio
async def test_cleanup_honors_explicit_retention(throttler, clock) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    await throttler.flush_all()
    clock.advance(days=3)

    assert await throttler.cleanup(retention_days=7) == 0
    assert await throttler.cleanup(retention_days=2) == 1


@pytest.mark.asyncio
async def test_delete_and_list_pending(throttler) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    await throttler.enqueue("u2", "task-2", "myTaskUpdated", task_payload())
    pending = await throttler.list_pending()
    assert len(pending) == 2

    assert await throttler.delete([pending[0].id]) == 1
    assert len(await throttler.list_pending()) == 1


def test_group_entries_orders_newest_first(clock) -> None:
    from kanbanpulse.domain.models import NotificationEntry

    older = NotificationEntry(id="a", recipient_id="u2", subject_id="t1", last_seen_at=clock())
    newer = NotificationEntry(id="b", recipient_id="u2", subject_id="t1", last_seen_at=clock.advance(minutes=5))
    other = NotificationEntry(id="c", recipient_id="u3", subject_id="t1", last_seen_at=clock())

    groups = group_entries([older, other, newer])
    assert [[row.id for row in group] for group in groups] == [["b", "a"], ["c"]]


@pytest.mark.asyncio
async def test_failed_status_is_reported_in_batch_counts(throttler, notifier, clock) -> None:
    await set_setting("NOTIFICATION_MAX_RETRIES", "1")
    notifier.outcomes = [False]
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    clock.advance(minutes=30)

    result = await throttler.process_due()
    assert result.failed == 1
    assert (await all_entries())[0].status == STATUS_FAILED
