from .auth import (
    BearerSession,
    CredentialStore,
    PairedTokens,
    SessionManager,
    Unauthenticated,
)
from .base_client import AuthenticatedTransport, classify_response
from .client import IGClient
from .config import (
    ExecutionEnvironment,
    ProtocolVersion,
    SessionConfig,
    load_config,
)
from .shutdown import ShutdownSignal, SignalListener
from .streaming import (
    ConnectionState,
    StreamingConnectionSupervisor,
    StreamOutcome,
    Subscription,
    SubscriptionListener,
    backoff_delay_ms,
)

__all__ = [
    "AuthenticatedTransport",
    "BearerSession",
    "ConnectionState",
    "CredentialStore",
    "ExecutionEnvironment",
    "IGClient",
    "PairedTokens",
    "ProtocolVersion",
    "SessionConfig",
    "SessionManager",
    "ShutdownSignal",
    "SignalListener",
    "StreamOutcome",
    "StreamingConnectionSupervisor",
    "Subscription",
    "SubscriptionListener",
    "Unauthenticated",
    "backoff_delay_ms",
    "classify_response",
    "load_config",
]
