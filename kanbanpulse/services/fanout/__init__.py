from kanbanpulse.services.fanout.base import (
    FanoutBackend,
    Handler,
    NullFanoutBackend,
    PayloadSizePolicy,
    Subscription,
    parse_tenant_channel,
    tenant_channel,
)
from kanbanpulse.services.fanout.factory import get_fanout_backend
from kanbanpulse.services.fanout.memory import InMemoryFanoutBackend

__all__ = [
    "FanoutBackend",
    "Handler",
    "InMemoryFanoutBackend",
    "NullFanoutBackend",
    "PayloadSizePolicy",
    "Subscription",
    "get_fanout_backend",
    "parse_tenant_channel",
    "tenant_channel",
]
