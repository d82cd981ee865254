from typing import Iterable, Optional
import requests

from .auth import SessionManager
from .base_client import AuthenticatedTransport
from .config import SessionConfig, load_config
from .endpoints import SessionAPI
from .shutdown import ShutdownSignal
from .streaming import StreamingConnectionSupervisor, Subscription


class IGClient:
    """
    Central entry point for the IG REST and streaming APIs.

    One SessionManager is shared by every sub-client of an instance; create
    one IGClient per session instead of sharing a global one.
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        *,
        http: Optional[requests.Session] = None,
    ):
        self.config = config or load_config()
        self.session_manager = SessionManager(self.config, http=http)

        # Sub-clients share the same transport and SessionManager instance
        self.transport = AuthenticatedTransport(self.session_manager)
        self.session = SessionAPI(transport=self.transport)

        if self.config.auto_login:
            self.session_manager.login()

    def login(self):
        return self.session_manager.login()

    def streaming(
        self,
        subscriptions: Iterable[Subscription] = (),
        *,
        shutdown: Optional[ShutdownSignal] = None,
        **kwargs,
    ) -> StreamingConnectionSupervisor:
        """Build a streaming supervisor bound to the current session."""
        if not self.session_manager.store.is_authenticated:
            self.session_manager.login()
        return StreamingConnectionSupervisor(
            self.session_manager,
            subscriptions,
            shutdown=shutdown,
            **kwargs,
        )
