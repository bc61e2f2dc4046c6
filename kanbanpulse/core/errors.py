from __future__ import annotations


class PulseError(Exception):
    """Base error for KanbanPulse."""


class ConfigError(PulseError):
    """Missing or invalid configuration."""


class NotifierError(PulseError):
    """Outbound transmission failed or was rejected."""


class DeliveryTimeoutError(NotifierError):
    """Outbound transmission did not finish within the delivery timeout."""


class RenderError(PulseError):
    """Notification could not be rendered into subject/body text."""


class FanoutError(PulseError):
    """Publish/subscribe backend failure."""


class FanoutConfigError(FanoutError):
    """Unknown or misconfigured fanout backend."""
