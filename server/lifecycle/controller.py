"""Lifecycle controller: bind, serve, and shut down on a termination signal.

The calling thread serves; a single shutdown-watcher thread waits for the
first SIGINT or SIGTERM and then drains the listener within
``max_duration + 1s``. The watcher hands control back through an
exit-ready latch that is set exactly once.
"""

import enum
import logging
import threading
from typing import Callable, Optional

from server.bootstrap.config import ResolvedConfig
from server.bootstrap.socket_factory import join_host_port
from server.domain.correlation_id import CorrelationLoggerAdapter
from server.handlers.dispatcher import Dispatcher
from server.lifecycle.signals import SignalSubscription
from server.transport.listener import Listener, ServerClosed

LIFECYCLE_LOGGER = CorrelationLoggerAdapter(logging.getLogger("httpbin.lifecycle"), {})

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

# Lets a request that uses its whole max_duration finish before the deadline.
SHUTDOWN_MARGIN_SECONDS = 1.0


class LifecycleState(enum.Enum):
    """Stages of the single listen/shutdown cycle a controller runs."""

    STARTING = "starting"
    SERVING = "serving"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED_TO_START = "failed_to_start"


_TRANSITIONS = {
    LifecycleState.STARTING: {
        LifecycleState.SERVING,
        LifecycleState.SHUTTING_DOWN,
        LifecycleState.FAILED_TO_START,
    },
    LifecycleState.SERVING: {LifecycleState.SHUTTING_DOWN, LifecycleState.STOPPED},
    LifecycleState.SHUTTING_DOWN: {LifecycleState.STOPPED},
    LifecycleState.STOPPED: set(),
    LifecycleState.FAILED_TO_START: set(),
}

ListenerFactory = Callable[[ResolvedConfig, Dispatcher], Listener]


class LifecycleController:
    """Own a listener from bind until confirmed stop."""

    def __init__(
        self,
        config: ResolvedConfig,
        dispatcher: Dispatcher,
        events: Optional[CorrelationLoggerAdapter] = None,
        subscription: Optional[SignalSubscription] = None,
        listener_factory: ListenerFactory = Listener,
    ) -> None:
        self._config = config
        self._dispatcher = dispatcher
        self._events = events if events is not None else LIFECYCLE_LOGGER
        self._subscription = (
            subscription if subscription is not None else SignalSubscription()
        )
        self._listener_factory = listener_factory
        self._exit_ready = threading.Event()
        self._state = LifecycleState.STARTING
        self._state_lock = threading.Lock()
        self._watcher: Optional[threading.Thread] = None

    @property
    def state(self) -> LifecycleState:
        with self._state_lock:
            return self._state

    @property
    def exit_ready(self) -> threading.Event:
        """Latch set by the watcher once graceful shutdown has returned."""
        return self._exit_ready

    @property
    def shutdown_timeout(self) -> float:
        return self._config.max_duration + SHUTDOWN_MARGIN_SECONDS

    def run(self) -> int:
        """Serve until shutdown; return the process exit status.

        Must be called from the main thread when the default signal
        subscription is used.
        """
        listener = self._listener_factory(self._config, self._dispatcher)
        self._subscription.subscribe()
        try:
            self._start_watcher(listener)

            try:
                listener.listen()
            except ServerClosed:
                pass
            except (OSError, OverflowError) as error:
                self._transition(LifecycleState.FAILED_TO_START)
                self._log_fatal("failed_to_listen", "Failed to listen", error)
                return EXIT_FAILURE
            else:
                if self._transition(LifecycleState.SERVING):
                    self._events.info(
                        "httpbin-server listening on %s://%s",
                        listener.scheme,
                        listener.address,
                        extra={
                            "event": "server_listening",
                            "scheme": listener.scheme,
                            "address": listener.address,
                            "tls": self._config.serve_tls,
                        },
                    )
                try:
                    listener.serve()
                except ServerClosed:
                    pass
                except Exception as error:  # pylint: disable=broad-except
                    self._transition(LifecycleState.STOPPED)
                    self._log_fatal("serve_failed", "Listener failed", error)
                    return EXIT_FAILURE

            self._exit_ready.wait()
            self._transition(LifecycleState.STOPPED)
            self._events.info("Shutdown finished", extra={"event": "shutdown_finished"})
            return EXIT_SUCCESS
        finally:
            self._subscription.unsubscribe()

    def _start_watcher(self, listener: Listener) -> None:
        if self._watcher is not None:
            raise RuntimeError("controller has already been run")
        self._watcher = threading.Thread(
            target=self._watch_for_shutdown,
            args=(listener,),
            name="shutdown-watcher",
            daemon=True,
        )
        self._watcher.start()

    def _watch_for_shutdown(self, listener: Listener) -> None:
        sig = self._subscription.wait()
        self._transition(LifecycleState.SHUTTING_DOWN)
        self._events.info(
            "Shutdown started by signal: %s",
            sig.name,
            extra={"event": "shutdown_started", "signal": sig.name},
        )

        timeout = self.shutdown_timeout
        try:
            listener.set_keep_alives_enabled(False)
            listener.shutdown(timeout)
        except Exception as error:  # pylint: disable=broad-except
            self._events.error(
                "Shutdown error: %s",
                error,
                extra={
                    "event": "shutdown_error",
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "timeout_seconds": timeout,
                },
            )
        finally:
            self._exit_ready.set()

    def _transition(self, new_state: LifecycleState) -> bool:
        with self._state_lock:
            if new_state not in _TRANSITIONS[self._state]:
                return False
            self._state = new_state
        LIFECYCLE_LOGGER.debug(
            "Lifecycle state changed",
            extra={"event": "state_changed", "state": new_state.value},
        )
        return True

    def _log_fatal(self, event: str, message: str, error: BaseException) -> None:
        self._events.critical(
            "%s: %s",
            message,
            error,
            extra={
                "event": event,
                "error": str(error),
                "error_type": type(error).__name__,
                "address": join_host_port(self._config.host, self._config.port),
            },
        )