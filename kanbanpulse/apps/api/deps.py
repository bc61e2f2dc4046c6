from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request, status

from kanbanpulse.core.config import get_settings
from kanbanpulse.services.pipeline import NotificationPipeline


def get_pipeline(request: Request) -> NotificationPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "PIPELINE_UNAVAILABLE", "message": "Notification pipeline is not running"},
        )
    return pipeline


async def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    # No configured token means the admin routes are left to network-level protection.
    expected = get_settings().admin_api_token
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing or invalid admin token"},
        )
