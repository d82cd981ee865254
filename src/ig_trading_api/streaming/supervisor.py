from typing import Callable, Iterable, List, Optional, Tuple
from enum import Enum
import logging

from ..auth import SessionManager, streaming_identity
from ..exceptions import ConfigError, MissingCredentialFields, TransportError
from ..shutdown import ShutdownSignal
from .lightstreamer import StreamingClient, Subscription


logger = logging.getLogger("ig_trading_api.stream")

BACKOFF_STEP_MS = 200
BACKOFF_CAP_MS = 5000


def next_backoff_ms(previous_ms: int, attempt: int) -> int:
    """One backoff step: grow linearly with the attempt index, capped."""
    return min(previous_ms + BACKOFF_STEP_MS * attempt, BACKOFF_CAP_MS)


def backoff_delay_ms(attempt: int) -> int:
    """
    Delay slept after the failed connection attempt ``attempt`` (0-based).

    ``delay(0) = 0`` and ``delay(n) = min(delay(n-1) + 200 * n, 5000)``:
    0, 200, 600, 1200, 2000, 3000, 4200, 5000, 5000, ...
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    delay = 0
    for n in range(1, attempt + 1):
        delay = next_backoff_ms(delay, n)
    return delay


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRYING = "retrying"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class StreamOutcome(Enum):
    DISCONNECTED = "disconnected"
    SHUTDOWN_REQUESTED = "shutdown_requested"
    EXHAUSTED = "exhausted"

    @property
    def orderly(self) -> bool:
        return self is not StreamOutcome.EXHAUSTED


class StreamingConnectionSupervisor:
    """
    Keeps the Lightstreamer feed of a logged-in session connected.

    Connection attempts are bounded by ``max_connection_attempts``; between
    failed attempts the supervisor sleeps for ``backoff_delay_ms(attempt)``.
    A successful connection is kept until the server closes it, which ends
    the run without further retries. The shutdown signal is observed while
    connecting, while sleeping between attempts and while connected, and the
    client is always disconnected before ``run`` returns.

    Parameters
    ----------
    session_manager : SessionManager
        Must already be logged in; provides the streaming identity and the
        streaming endpoint.
    subscriptions : iterable of Subscription
        Registered on the client before the first attempt. The client
        re-applies them on reconnect.
    shutdown : ShutdownSignal, optional
        External stop notification. A private one is created if omitted.
    max_connection_attempts : int, optional
        Defaults to the configured ``streaming_api_max_connection_attempts``.
    client : StreamingClient, optional
        Pre-built streaming client, mainly for tests.
    on_state_change : callable, optional
        Called with ``(state, attempt, delay_ms)`` on every transition.
    poll_interval : float, default=0.25
        Granularity, in seconds, of the shutdown check while connected.

    Raises
    ------
    AuthError
        The session is not authenticated or did not provide a streaming
        endpoint.
    ConfigError
        ``max_connection_attempts`` is below 1.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        subscriptions: Iterable[Subscription] = (),
        *,
        shutdown: Optional[ShutdownSignal] = None,
        max_connection_attempts: Optional[int] = None,
        client: Optional[StreamingClient] = None,
        on_state_change: Optional[Callable] = None,
        poll_interval: float = 0.25,
    ) -> None:
        config = session_manager.config
        if max_connection_attempts is None:
            max_connection_attempts = (
                config.streaming_api_max_connection_attempts
            )
        if max_connection_attempts < 1:
            raise ConfigError(
                "max_connection_attempts must be at least 1, "
                f"got {max_connection_attempts}"
            )
        self.max_connection_attempts = max_connection_attempts

        self.user, self.password = streaming_identity(
            session_manager.credential, config
        )

        if client is None:
            endpoint = session_manager.lightstreamer_endpoint
            if not endpoint:
                raise MissingCredentialFields(["lightstreamerEndpoint"])
            client = StreamingClient(
                endpoint,
                user=self.user,
                password=self.password,
            )
        self.client = client

        for subscription in subscriptions:
            self.client.subscribe(subscription)

        self.shutdown = shutdown or ShutdownSignal()
        self.on_state_change = on_state_change
        self.poll_interval = poll_interval

        self.state = ConnectionState.IDLE
        self.attempt = 0
        self.delay_ms = 0
        self.outcome: Optional[StreamOutcome] = None
        self.retry_delays_ms: List[int] = []
        self.history: List[Tuple[ConnectionState, int, int]] = []

    def _transition(
        self,
        state: ConnectionState,
        attempt: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ) -> None:
        self.state = state
        if attempt is not None:
            self.attempt = attempt
        if delay_ms is not None:
            self.delay_ms = delay_ms
        self.history.append((state, self.attempt, self.delay_ms))
        logger.debug(
            f"Stream state: {state.value} "
            f"(attempt={self.attempt}, delay_ms={self.delay_ms})"
        )
        if self.on_state_change is not None:
            self.on_state_change(state, self.attempt, self.delay_ms)

    def run(self) -> StreamOutcome:
        """
        Run the connect/retry loop until it ends.

        Returns
        -------
        StreamOutcome
            ``DISCONNECTED`` after a clean close of an established session,
            ``SHUTDOWN_REQUESTED`` when the shutdown signal stopped it,
            ``EXHAUSTED`` when every attempt failed.
        """
        outcome = StreamOutcome.EXHAUSTED
        attempt = 0
        delay_ms = 0

        try:
            while attempt < self.max_connection_attempts:
                if self.shutdown.is_set():
                    outcome = StreamOutcome.SHUTDOWN_REQUESTED
                    break

                self._transition(ConnectionState.CONNECTING, attempt=attempt)
                try:
                    self.client.connect()
                except TransportError as e:
                    logger.error(f"Failed to connect: {e}")

                    if attempt + 1 >= self.max_connection_attempts:
                        break

                    self._transition(
                        ConnectionState.RETRYING,
                        attempt=attempt,
                        delay_ms=delay_ms,
                    )
                    logger.info(
                        f"Retrying connection in {delay_ms / 1000:.2f} "
                        "seconds..."
                    )
                    self.retry_delays_ms.append(delay_ms)
                    if self.shutdown.wait(delay_ms / 1000):
                        outcome = StreamOutcome.SHUTDOWN_REQUESTED
                        break

                    attempt += 1
                    delay_ms = next_backoff_ms(delay_ms, attempt)
                    continue

                # connect() cannot be aborted, check once it returned.
                if self.shutdown.is_set():
                    outcome = StreamOutcome.SHUTDOWN_REQUESTED
                    break

                self._transition(ConnectionState.CONNECTED, attempt=attempt)
                outcome = self._await_disconnect()
                break
        finally:
            self._terminate(outcome)

        if outcome is StreamOutcome.EXHAUSTED:
            logger.error(
                f"Failed to connect after {self.max_connection_attempts} "
                "attempts. Exiting..."
            )
        else:
            logger.info("Exiting orderly from Lightstreamer client...")
        return outcome

    def _await_disconnect(self) -> StreamOutcome:
        while True:
            if self.shutdown.is_set():
                return StreamOutcome.SHUTDOWN_REQUESTED
            if self.client.wait_for_disconnect(self.poll_interval):
                logger.info("Stream disconnected.")
                return StreamOutcome.DISCONNECTED

    def _terminate(self, outcome: StreamOutcome) -> None:
        if outcome is not StreamOutcome.DISCONNECTED:
            self._transition(ConnectionState.SHUTTING_DOWN)
        # Also stops the client from reconnecting on its own.
        self.client.disconnect()
        self.outcome = outcome
        self._transition(ConnectionState.TERMINATED)

    def stop(self) -> None:
        """Ask a running supervisor to shut down."""
        self.shutdown.raise_("stop requested")
