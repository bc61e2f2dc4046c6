from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from kanbanpulse.services.telemetry import counters_snapshot

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    scheduler_running: bool
    fanout_backend: str
    fanout_connected: bool
    counters: dict[str, int]


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    # Degraded when the pipeline exists but its fanout transport is down.
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        return HealthResponse(
            status="ok",
            scheduler_running=False,
            fanout_backend="none",
            fanout_connected=False,
            counters=counters_snapshot(),
        )
    fanout = pipeline.fanout
    degraded = fanout.name != "none" and not fanout.connected
    return HealthResponse(
        status="degraded" if degraded else "ok",
        scheduler_running=pipeline.scheduler.running,
        fanout_backend=fanout.name,
        fanout_connected=fanout.connected,
        counters=counters_snapshot(),
    )
