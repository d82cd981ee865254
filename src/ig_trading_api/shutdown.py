from typing import Optional
from threading import Event, RLock
import logging
import signal


logger = logging.getLogger("ig_trading_api.shutdown")


class ShutdownSignal:
    """
    One-shot, multi-observer shutdown notification.

    Raising it is sticky: a waiter that starts listening after the
    notification was raised returns immediately, so no wake-up is lost.
    Only the first ``raise_`` has an effect.
    """

    def __init__(self) -> None:
        self._event = Event()
        # Reentrant: a signal handler may run while the main thread holds it.
        self._lock = RLock()
        self.reason: Optional[str] = None

    def raise_(self, reason: str = "shutdown requested") -> bool:
        """
        Raise the notification.

        Returns
        -------
        bool
            True if this call raised it, False if it was already raised.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
        logger.info(f"Shutdown signal raised: {reason}")
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until raised or ``timeout`` seconds elapse."""
        return self._event.wait(timeout)


class SignalListener:
    """
    Publishes SIGINT / SIGTERM into a ShutdownSignal.

    The first delivery of either signal raises the notification and
    restores the handlers that were installed before, so the listener stops
    listening after one event. Handlers can only be installed from the main
    thread.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, shutdown: ShutdownSignal) -> None:
        self.shutdown = shutdown
        self._previous = {}

    @property
    def installed(self) -> bool:
        return bool(self._previous)

    def install(self) -> "SignalListener":
        if self.installed:
            return self
        for signum in self.SIGNALS:
            previous = signal.signal(signum, self._handle)
            # None means the handler was not installed from Python.
            self._previous[signum] = (
                previous if previous is not None else signal.SIG_DFL
            )
        return self

    def uninstall(self) -> None:
        previous, self._previous = self._previous, {}
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _handle(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        logger.info(f"Received signal: {name}")
        self.uninstall()
        self.shutdown.raise_(f"received {name}")

    def __enter__(self) -> "SignalListener":
        return self.install()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.uninstall()


def install_signal_handlers(
    shutdown: Optional[ShutdownSignal] = None,
) -> ShutdownSignal:
    """Create (or reuse) a ShutdownSignal fed by SIGINT and SIGTERM."""
    shutdown = shutdown or ShutdownSignal()
    SignalListener(shutdown).install()
    return shutdown
