from .lightstreamer import (
    ItemUpdate,
    StreamingClient,
    Subscription,
    SubscriptionListener,
)
from .supervisor import (
    ConnectionState,
    StreamingConnectionSupervisor,
    StreamOutcome,
    backoff_delay_ms,
)

__all__ = [
    "ConnectionState",
    "ItemUpdate",
    "StreamOutcome",
    "StreamingClient",
    "StreamingConnectionSupervisor",
    "Subscription",
    "SubscriptionListener",
    "backoff_delay_ms",
]
