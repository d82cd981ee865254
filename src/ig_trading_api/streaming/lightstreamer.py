from typing import List, Optional
from threading import Condition, Event
from lightstreamer.client import (
    ClientListener,
    ItemUpdate,
    LightstreamerClient,
    Subscription,
    SubscriptionListener,
)
import logging
import time

from ..exceptions import StreamingError, TransportError


CONNECTED_PREFIX = "CONNECTED:"
STREAM_SENSING = "CONNECTED:STREAM-SENSING"
DISCONNECTED = "DISCONNECTED"
WILL_RETRY = "DISCONNECTED:WILL-RETRY"

__all__ = [
    "ItemUpdate",
    "StreamingClient",
    "Subscription",
    "SubscriptionListener",
    "get_stream_logger",
]


def get_stream_logger() -> logging.Logger:
    logger = logging.getLogger("ig_trading_api.stream")
    if not logger.handlers:
        handler = logging.StreamHandler()
        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(fmt)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger


class _StatusListener(ClientListener):
    """Forwards status changes and server errors to a StreamingClient."""

    def __init__(self, owner: "StreamingClient") -> None:
        super().__init__()
        self.owner = owner

    def onStatusChange(self, status):
        self.owner._on_status(status)

    def onServerError(self, errorCode, errorMessage):
        self.owner._on_server_error(errorCode, errorMessage)


class StreamingClient:
    """
    Blocking facade over ``lightstreamer.client.LightstreamerClient``.

    The underlying client connects asynchronously and retries on its own.
    ``connect`` instead waits for the session to be established and turns a
    refused or dropped attempt into an exception, leaving the retry policy
    to the caller. Subscriptions are handed to the underlying client, which
    keeps them across sessions.

    Parameters
    ----------
    server_address : str
        Streaming endpoint returned by the login call, e.g.
        ``https://demo-apd.marketdatasystems.com``. The library appends its
        ``/lightstreamer`` service path.
    adapter_set : str, optional
        Adapter set to bind the session to. The server default if omitted.
    user, password : str, optional
        Streaming credentials (account id and session identity string).
    connect_timeout : float, default=30
        Maximum time, in seconds, ``connect`` waits for the session.
    """

    def __init__(
        self,
        server_address: str,
        adapter_set: Optional[str] = None,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        connect_timeout: float = 30,
    ) -> None:
        if not server_address:
            raise ValueError("A streaming server address must be provided.")

        self.server_address = server_address.rstrip("/")
        self.user = user
        self.password = password
        self.connect_timeout = connect_timeout
        self.logger = get_stream_logger()

        self.client = LightstreamerClient(self.server_address, adapter_set)
        if user is not None:
            self.client.connectionDetails.setUser(user)
        if password is not None:
            self.client.connectionDetails.setPassword(password)
        self.client.addListener(_StatusListener(self))

        self.status = DISCONNECTED
        self._subscriptions: List[Subscription] = []
        self._changed = Condition()
        self._established = False
        self._closing = False
        self._server_error: Optional[StreamingError] = None
        self._disconnected = Event()
        self._disconnected.set()

    # -- subscriptions ----------------------------------------------------

    def subscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            return
        self._subscriptions.append(subscription)
        self.client.subscribe(subscription)

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription not in self._subscriptions:
            return
        self._subscriptions.remove(subscription)
        self.client.unsubscribe(subscription)

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    # -- session lifecycle ------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._established and not self._disconnected.is_set()

    def connect(self) -> None:
        """
        Open a streaming session and wait until it is established.

        Raises
        ------
        StreamingError
            The server refused the session.
        TransportError
            The session could not be opened within ``connect_timeout``,
            or the connection dropped before it was established.
        """
        if self.is_connected:
            return

        with self._changed:
            self.status = "CONNECTING"
            self._established = False
            self._closing = False
            self._server_error = None
            self._disconnected.clear()

        self.logger.info(f"Connecting to {self.server_address}")
        self.client.connect()

        try:
            self._await_session()
        except TransportError:
            self._release()
            raise
        self.logger.info(f"Stream session established ({self.status}).")

    def _await_session(self) -> None:
        deadline = time.monotonic() + self.connect_timeout
        with self._changed:
            while True:
                if self._server_error is not None:
                    raise self._server_error
                if self._established:
                    return
                if self.status in (DISCONNECTED, WILL_RETRY):
                    raise TransportError(
                        f"Stream connection failed ({self.status})"
                    )
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransportError(
                        "Timed out waiting for the stream session after "
                        f"{self.connect_timeout} seconds"
                    )
                self._changed.wait(remaining)

    def wait_for_disconnect(self, timeout: Optional[float] = None) -> bool:
        """Block until the session ends. Returns False on timeout."""
        return self._disconnected.wait(timeout)

    def disconnect(self) -> None:
        """Close the session, if any, and stop the client's own retries."""
        self._release()
        self.logger.info("Disconnected from stream.")

    def _release(self) -> None:
        with self._changed:
            self._closing = True
        self.client.disconnect()
        with self._changed:
            self.status = DISCONNECTED
            self._established = False
            self._disconnected.set()
            self._changed.notify_all()

    # -- listener callbacks -----------------------------------------------

    def _on_status(self, status: str) -> None:
        self.logger.debug(f"Stream status: {status}")
        with self._changed:
            self.status = status
            if status.startswith(CONNECTED_PREFIX) and status != STREAM_SENSING:
                self._established = True
            elif status in (DISCONNECTED, WILL_RETRY) and self._established:
                self._established = False
                if not self._closing:
                    self.logger.warning("Stream closed by server.")
                self._disconnected.set()
            self._changed.notify_all()

    def _on_server_error(self, code, message) -> None:
        self.logger.error(f"Stream session refused ({code}): {message}")
        with self._changed:
            self._server_error = StreamingError(
                f"Stream session refused ({code}): {message}", code
            )
            self._changed.notify_all()
