from __future__ import annotations

from httpx import ASGITransport, AsyncClient
import pytest

from kanbanpulse.apps.api.main import create_app
from kanbanpulse.core.config import get_settings
from kanbanpulse.persistence.db import SessionLocal
from kanbanpulse.services.fanout import InMemoryFanoutBackend
from kanbanpulse.services.notifications.preferences import StaticPreferenceResolver
from kanbanpulse.services.pipeline import build_pipeline
from kanbanpulse.tests.utils.fakes import RecordingNotifier, all_entries, task_payload


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def pipeline(clock):
    return build_pipeline(
        session_factory=SessionLocal,
        notifier=RecordingNotifier(),
        preferences=StaticPreferenceResolver(),
        fanout=InMemoryFanoutBackend(),
        clock=clock,
        interval_s=3600,
    )


@pytest.mark.asyncio
async def test_list_queue_entries_by_status(pipeline) -> None:
    await pipeline.throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    await pipeline.throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload(details="renamed"))
    await pipeline.throttler.enqueue("u3", "task-2", "commentAdded", task_payload())

    async with _client(create_app(pipeline=pipeline)) as client:
        response = await client.get("/v1/admin/notification-queue", params={"status": "pending"})
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        coalesced = next(item for item in body["items"] if item["subject_id"] == "task-1")
        assert coalesced["change_count"] == 2
        assert coalesced["payload"]["details"] == "renamed"

        empty = await client.get("/v1/admin/notification-queue", params={"status": "sent"})
        assert empty.json() == {"items": [], "count": 0}

        invalid = await client.get("/v1/admin/notification-queue", params={"status": "bogus"})
        assert invalid.status_code == 422
        assert invalid.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_send_selected_entries_now(pipeline) -> None:
    await pipeline.throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    entry_id = (await all_entries())[0].id

    async with _client(create_app(pipeline=pipeline)) as client:
        response = await client.post(
            "/v1/admin/notification-queue/send", json={"ids": [entry_id, "does-not-exist"]}
        )
    assert response.status_code == 200
    body = response.json()
    assert body["sent_count"] == 1
    assert body["failed_count"] == 0
    assert body["errors"] == ["does-not-exist: not pending"]
    assert (await all_entries())[0].status == "sent"


@pytest.mark.asyncio
async def test_delete_entries(pipeline) -> None:
    await pipeline.throttler.enqueue("u2", "task-1", "myTaskUpdated", task_payload())
    await pipeline.throttler.enqueue("u2", "task-2", "myTaskUpdated", task_payload())
    ids = [row.id for row in await all_entries()]

    async with _client(create_app(pipeline=pipeline)) as client:
        response = await client.request("DELETE", "/v1/admin/notification-queue", json={"ids": ids[:1]})
        assert response.status_code == 200
        assert response.json() == {"deleted_count": 1}

        rejected = await client.request("DELETE", "/v1/admin/notification-queue", json={"ids": []})
        assert rejected.status_code == 422
    assert [row.id for row in await all_entries()] == ids[1:]


@pytest.mark.asyncio
async def test_admin_token_is_enforced(pipeline, monkeypatch) -> None:
    monkeypatch.setenv("ADMIN_API_TOKEN", "letmein")
    get_settings.cache_clear()

    async with _client(create_app(pipeline=pipeline)) as client:
        missing = await client.get("/v1/admin/notification-queue")
        wrong = await client.get("/v1/admin/notification-queue", headers={"X-Admin-Token": "nope"})
        ok = await client.get("/v1/admin/notification-queue", headers={"X-Admin-Token": "letmein"})

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert wrong.status_code == 401
    assert ok.status_code == 200


@pytest.mark.asyncio
async def test_queue_routes_without_pipeline_return_503() -> None:
    app = create_app()
    async with _client(app) as client:
        response = await client.get("/v1/admin/notification-queue")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "PIPELINE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_health_reports_pipeline_state(pipeline) -> None:
    app = create_app(pipeline=pipeline)
    async with _client(app) as client:
        before = (await client.get("/health")).json()
        assert before["status"] == "degraded"
        assert before["fanout_backend"] == "memory"
        assert before["scheduler_running"] is False

        await pipeline.start()
        try:
            after = (await client.get("/v1/health")).json()
        finally:
            await pipeline.shutdown()

    assert after["status"] == "ok"
    assert after["fanout_connected"] is True
    assert after["scheduler_running"] is True
