from kanbanpulse.services.notifications.activity import route_activity
from kanbanpulse.services.notifications.delivery import (
    ConsolidatedNotification,
    DeliveryExecutor,
    DeliveryOutcome,
    build_consolidated,
)
from kanbanpulse.services.notifications.notifiers import HttpNotifier, LogNotifier, NullNotifier, get_notifier
from kanbanpulse.services.notifications.ports import (
    Notifier,
    PreferenceResolver,
    RecipientDirectory,
    RenderedMessage,
    Renderer,
    SendResult,
)
from kanbanpulse.services.notifications.preferences import (
    DatabasePreferenceResolver,
    PayloadRecipientDirectory,
    StaticPreferenceResolver,
)
from kanbanpulse.services.notifications.rendering import TemplateRenderer, format_time_span
from kanbanpulse.services.notifications.runtime_config import ThrottleConfig, load_throttle_config
from kanbanpulse.services.notifications.scheduler import NotificationScheduler
from kanbanpulse.services.notifications.throttler import NotificationThrottler, ProcessResult, group_entries

__all__ = [
    "ConsolidatedNotification",
    "DatabasePreferenceResolver",
    "DeliveryExecutor",
    "DeliveryOutcome",
    "HttpNotifier",
    "LogNotifier",
    "NotificationScheduler",
    "NotificationThrottler",
    "Notifier",
    "NullNotifier",
    "PayloadRecipientDirectory",
    "PreferenceResolver",
    "ProcessResult",
    "RecipientDirectory",
    "RenderedMessage",
    "Renderer",
    "SendResult",
    "StaticPreferenceResolver",
    "TemplateRenderer",
    "ThrottleConfig",
    "build_consolidated",
    "format_time_span",
    "get_notifier",
    "group_entries",
    "load_throttle_config",
    "route_activity",
]
