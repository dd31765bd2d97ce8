"""One-shot subscription to process termination signals."""

import logging
import queue
import signal
from typing import Callable, Iterable, Optional

from server.domain.correlation_id import CorrelationLoggerAdapter

SIGNAL_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("httpbin.lifecycle.signals"), {}
)

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)

InstallHandler = Callable[[int, Callable], object]


class SignalSubscription:
    """Deliver termination signals through a channel holding one pending signal.

    A signal that arrives before anyone waits stays buffered; further signals
    while the slot is occupied are dropped. Handlers that were installed
    before ``subscribe()`` are restored by ``unsubscribe()``.
    """

    capacity = 1

    def __init__(
        self,
        signals: Iterable[int] = TERMINATION_SIGNALS,
        install_handler: InstallHandler = signal.signal,
    ) -> None:
        self._signals = tuple(signal.Signals(sig) for sig in signals)
        self._install_handler = install_handler
        # SimpleQueue.put is safe to call from a signal handler.
        self._channel: "queue.SimpleQueue[signal.Signals]" = queue.SimpleQueue()
        self._previous: dict = {}
        self._subscribed = False

    @property
    def signals(self) -> tuple:
        return self._signals

    def subscribe(self) -> None:
        """Route the subscribed signals into the channel."""
        if self._subscribed:
            return
        for sig in self._signals:
            self._previous[sig] = self._install_handler(sig, self.notify)
        self._subscribed = True

    def unsubscribe(self) -> None:
        """Restore the handlers that were active before subscribe()."""
        if not self._subscribed:
            return
        for sig, previous in self._previous.items():
            if previous is None:
                previous = signal.SIG_DFL
            self._install_handler(sig, previous)
        self._previous.clear()
        self._subscribed = False

    def notify(self, signum: int, _frame=None) -> None:
        """Signal handler: buffer the signal unless one is already pending."""
        if self._channel.qsize() >= self.capacity:
            return
        self._channel.put(signal.Signals(signum))

    def pending(self) -> int:
        """Number of signals delivered but not yet consumed."""
        return self._channel.qsize()

    def wait(self, timeout: Optional[float] = None) -> signal.Signals:
        """Block until a signal is delivered and consume it.

        Raises queue.Empty when a timeout is given and expires.
        """
        sig = self._channel.get(timeout=timeout)
        SIGNAL_LOGGER.debug(
            "Termination signal consumed",
            extra={"event": "signal_consumed", "signal": sig.name},
        )
        return sig
