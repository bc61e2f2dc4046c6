from __future__ import annotations

import pytest

from kanbanpulse.domain.models import STATUS_CLAIMED, STATUS_SENT
from kanbanpulse.persistence.db import SessionLocal
from kanbanpulse.persistence.repos.notification_queue import claim_due_entries, mark_entries_sent
from kanbanpulse.services.notifications.throttler import NotificationThrottler
from kanbanpulse.services.telemetry import counters_snapshot
from kanbanpulse.tests.utils.fakes import all_entries, task_payload


async def _claim(now, token: str, **kwargs):
    async with SessionLocal() as session:
        return await claim_due_entries(session, now=now, limit=50, lease_seconds=600, token=token, **kwargs)


@pytest.mark.asyncio
async def test_claimed_rows_are_not_claimed_twice(throttler, clock) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    await throttler.enqueue("u3", "task-1", "myTaskUpdated", task_payload())
    now = clock.advance(minutes=30)

    first = await _claim(now, "worker-a")
    second = await _claim(now, "worker-b")

    assert len(first) == 2
    assert second == []
    assert {row.status for row in await all_entries()} == {STATUS_CLAIMED}


@pytest.mark.asyncio
async def test_expired_claims_become_eligible_again(throttler, clock) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    now = clock.advance(minutes=30)
    [entry] = await _claim(now, "worker-a")

    assert await _claim(clock.advance(seconds=599), "worker-b") == []
    [reclaimed] = await _claim(clock.advance(seconds=1), "worker-b")
    assert reclaimed.id == entry.id
    assert reclaimed.claim_token == "worker-b"

    # The worker that lost its lease cannot finalize the row any more.
    async with SessionLocal() as session:
        assert await mark_entries_sent(session, entry_ids=[entry.id], token="worker-a", now=clock()) == 0
        assert await mark_entries_sent(session, entry_ids=[entry.id], token="worker-b", now=clock()) == 1
        await session.commit()
    assert (await all_entries())[0].status == STATUS_SENT


@pytest.mark.asyncio
async def test_claim_respects_limit_and_schedule(throttler, clock) -> None:
    for index in range(3):
        await throttler.enqueue("u2", f"task-{index}", "myTaskUpdated", task_payload())
        clock.advance(minutes=1)

    async with SessionLocal() as session:
        claimed = await claim_due_entries(
            session, now=clock.advance(minutes=27), limit=1, lease_seconds=600, token="t"
        )
    # Only the oldest row is due, and the limit caps the batch anyway.
    assert [row.subject_id for row in claimed] == ["task-0"]


@pytest.mark.asyncio
async def test_ignore_schedule_claims_selected_rows(throttler, clock) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    await throttler.enqueue("u2", "task-2", "myTaskUpdated", task_payload())
    wanted = next(row.id for row in await all_entries() if row.subject_id == "task-2")

    claimed = await _claim(clock(), "flush", ignore_schedule=True, entry_ids=[wanted])
    assert [row.id for row in claimed] == [wanted]


@pytest.mark.asyncio
async def test_lease_is_renewed_for_each_group(throttler, notifier, executor, clock) -> None:
    for index in range(3):
        await throttler.enqueue("u2", f"task-{index}", "myTaskUpdated", task_payload())
    clock.advance(minutes=30)
    other = NotificationThrottler(session_factory=SessionLocal, executor=executor, clock=clock)
    overlapping: list = []

    async def slow_send() -> None:
        # Each send takes four minutes; a second processor runs during the third one.
        clock.advance(minutes=4)
        if len(notifier.calls) == 3:
            overlapping.append(await other.process_due())

    notifier.before_send = slow_send
    result = await throttler.process_due()

    assert result.sent == 3
    assert overlapping[0].claimed == 0
    assert len(notifier.calls) == 3
    assert {row.status for row in await all_entries()} == {STATUS_SENT}


@pytest.mark.asyncio
async def test_lapsed_claims_are_reported_lost(throttler, notifier, clock) -> None:
    await throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    await throttler.enqueue("u2", "task-2", "myTaskUpdated", task_payload())
    clock.advance(minutes=30)
    stolen: list = []

    async def stall_past_lease() -> None:
        notifier.before_send = None
        stolen.extend(await _claim(clock.advance(minutes=11), "worker-b"))

    notifier.before_send = stall_past_lease
    result = await throttler.process_due()

    # The in-flight send cannot be marked sent, and the second group is skipped.
    assert len(stolen) == 2
    assert result.lost == 2
    assert result.sent == 0
    assert len(notifier.calls) == 1
    counters = counters_snapshot()
    assert counters["notifications.claim_lost"] == 2
    assert counters.get("notifications.sent", 0) == 0
    assert {row.claim_token for row in await all_entries()} == {"worker-b"}
