from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str
    html: str | None = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    detail: str | None = None


class Notifier(Protocol):
    async def send(self, address: str, subject: str, body: str) -> SendResult | bool | None:
        ...


class Renderer(Protocol):
    def render(
        self,
        category: str,
        payload: dict[str, Any],
        change_count: int,
        span: str,
    ) -> RenderedMessage:
        ...


class PreferenceResolver(Protocol):
    async def is_enabled(self, recipient_id: str, category: str) -> bool:
        ...


class RecipientDirectory(Protocol):
    async def resolve_address(self, recipient_id: str, payload: dict[str, Any]) -> str | None:
        ...
