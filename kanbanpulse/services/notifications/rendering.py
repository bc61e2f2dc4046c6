from __future__ import annotations

from datetime import datetime
from typing import Any

from kanbanpulse.core.errors import RenderError
from kanbanpulse.services.notifications.ports import RenderedMessage


CATEGORY_TASK_ASSIGNED = "newTaskAssigned"
CATEGORY_MY_TASK_UPDATED = "myTaskUpdated"
CATEGORY_WATCHED_TASK_UPDATED = "watchedTaskUpdated"
CATEGORY_ADDED_AS_COLLABORATOR = "addedAsCollaborator"
CATEGORY_COLLABORATING_TASK_UPDATED = "collaboratingTaskUpdated"
CATEGORY_COMMENT_ADDED = "commentAdded"
CATEGORY_REQUESTER_TASK_CREATED = "requesterTaskCreated"
CATEGORY_REQUESTER_TASK_UPDATED = "requesterTaskUpdated"

# Subject line per category; {title} and {ticket} come from the payload's task snapshot.
_SUBJECT_TEMPLATES: dict[str, str] = {
    CATEGORY_TASK_ASSIGNED: "{ticket}You have been assigned: {title}",
    CATEGORY_MY_TASK_UPDATED: "{ticket}Your task was updated: {title}",
    CATEGORY_WATCHED_TASK_UPDATED: "{ticket}Watched task updated: {title}",
    CATEGORY_ADDED_AS_COLLABORATOR: "{ticket}You were added as a collaborator: {title}",
    CATEGORY_COLLABORATING_TASK_UPDATED: "{ticket}Task you collaborate on was updated: {title}",
    CATEGORY_COMMENT_ADDED: "{ticket}New comment on: {title}",
    CATEGORY_REQUESTER_TASK_CREATED: "{ticket}Your request was created: {title}",
    CATEGORY_REQUESTER_TASK_UPDATED: "{ticket}Your request was updated: {title}",
}
_DEFAULT_SUBJECT = "{ticket}Task activity: {title}"


def format_time_span(start: datetime, end: datetime) -> str:
    """Render the accumulation window the way recipients read it.

    Spans below one minute read "less than a minute"; spans below an hour are
    reported in whole minutes and longer spans in whole hours.
    """
    minutes = int(max(0.0, (end - start).total_seconds()) // 60)
    if minutes < 1:
        return "less than a minute"
    if minutes == 1:
        return "1 minute"
    if minutes < 60:
        return f"{minutes} minutes"
    hours = minutes // 60
    return "1 hour" if hours == 1 else f"{hours} hours"


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _task_fields(payload: dict[str, Any]) -> tuple[str, str]:
    task = payload.get("task")
    if not isinstance(task, dict):
        task = {}
    title = _text(task.get("title") or payload.get("title")) or "Untitled task"
    ticket = _text(task.get("ticket") or payload.get("ticket"))
    return title, ticket


def _actor_name(payload: dict[str, Any]) -> str:
    actor = payload.get("actor")
    if isinstance(actor, dict):
        return _text(actor.get("name") or actor.get("email")) or "Someone"
    return _text(actor) or "Someone"


class TemplateRenderer:
    """Plain-text renderer keyed by notification category."""

    def __init__(self, *, site_name: str = "Kanban", subject_templates: dict[str, str] | None = None) -> None:
        self._site_name = site_name
        self._subjects = dict(_SUBJECT_TEMPLATES)
        if subject_templates:
            self._subjects.update(subject_templates)

    def render(
        self,
        category: str,
        payload: dict[str, Any],
        change_count: int,
        span: str,
    ) -> RenderedMessage:
        if not isinstance(payload, dict):
            raise RenderError(f"payload for category {category!r} must be an object")
        title, ticket = _task_fields(payload)
        template = self._subjects.get(category, _DEFAULT_SUBJECT)
        try:
            subject = template.format(title=title, ticket=f"[{ticket}] " if ticket else "")
        except (KeyError, IndexError, ValueError) as exc:
            raise RenderError(f"invalid subject template for category {category!r}") from exc
        actor = _actor_name(payload)
        if change_count > 1:
            subject = f"{subject} ({change_count} changes)"
            lines = [
                f"{change_count} changes to {title} over {span}.",
                "",
                f"Latest change by {actor}: {_text(payload.get('latest_details') or payload.get('details')) or 'updated'}",
            ]
        else:
            lines = [f"{actor} {_text(payload.get('details')) or _text(payload.get('action')) or 'updated this task'}."]
            old_value = _text(payload.get("old_value"))
            new_value = _text(payload.get("new_value"))
            if old_value or new_value:
                lines.append("")
                lines.append(f"Before: {old_value or '-'}")
                lines.append(f"After: {new_value or '-'}")
            comment = _text(payload.get("comment"))
            if comment:
                lines.append("")
                lines.append(comment)
        lines.extend(["", f"-- {self._site_name}"])
        return RenderedMessage(subject=subject, body="\n".join(lines))
