"""Listener state shared between the accept loop, workers and shutdown."""

import enum
import logging
import socket
import threading
import time

from server.domain.correlation_id import CorrelationLoggerAdapter

STATE_LOGGER = CorrelationLoggerAdapter(logging.getLogger("httpbin.lifecycle.state"), {})

WORKER_POLL_INTERVAL = 0.1
# A new connection that has not sent a request within this window counts as idle.
NEW_CONNECTION_GRACE_SECONDS = 5.0


class ConnectionState(enum.Enum):
    """Where a connection is in its request cycle."""

    NEW = "new"
    IDLE = "idle"
    ACTIVE = "active"


class ServerLifecycle:
    """Tracks draining, keep-alive policy, worker threads and open connections."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._draining_event = threading.Event()
        self._keep_alives_enabled = True
        self._workers: set[threading.Thread] = set()
        self._connections: dict[socket.socket, tuple[ConnectionState, float]] = {}

    def should_stop(self) -> bool:
        """Check if the server should stop accepting new connections."""
        return self._stop_event.is_set()

    def is_draining(self) -> bool:
        """Check if the server is in draining mode."""
        return self._draining_event.is_set()

    def begin_draining(self) -> None:
        """Stop admitting connections; in-flight requests may still finish."""
        self._draining_event.set()
        self._stop_event.set()
        STATE_LOGGER.info("Beginning graceful shutdown", extra={"event": "draining"})

    def keep_alives_enabled(self) -> bool:
        """Return False once persistent connections are no longer admitted."""
        with self._lock:
            return self._keep_alives_enabled

    def set_keep_alives_enabled(self, enabled: bool) -> None:
        """Toggle whether connections may serve more than one request."""
        with self._lock:
            self._keep_alives_enabled = enabled
        if not enabled:
            self.close_idle_connections()

    def register_worker(self, thread: threading.Thread) -> None:
        """Register a worker thread for tracking."""
        with self._lock:
            self._workers.add(thread)

    def cleanup_worker(self, thread: threading.Thread) -> None:
        """Remove a worker thread from tracking."""
        with self._lock:
            self._workers.discard(thread)

    def has_worker(self, thread: threading.Thread) -> bool:
        """Return True when the worker is currently tracked."""
        with self._lock:
            return thread in self._workers

    def active_worker_count(self) -> int:
        """Return the number of currently tracked worker threads."""
        with self._lock:
            return len(self._workers)

    def track_connection(self, connection: socket.socket) -> None:
        """Start tracking a freshly accepted connection."""
        self._set_state(connection, ConnectionState.NEW, only_if_tracked=False)

    def mark_idle(self, connection: socket.socket) -> bool:
        """Record that the connection is waiting for its next request.

        Returns False, and stops tracking the connection, when keep-alives
        are disabled and the caller should close it instead of waiting.
        """
        with self._lock:
            if not self._keep_alives_enabled:
                self._connections.pop(connection, None)
                return False
            if connection in self._connections:
                self._connections[connection] = (ConnectionState.IDLE, time.monotonic())
            return True

    def mark_active(self, connection: socket.socket) -> None:
        """Record that a request is being read or processed on the connection."""
        self._set_state(connection, ConnectionState.ACTIVE)

    def connection_state(self, connection: socket.socket):
        """Return the tracked state of a connection, or None once forgotten."""
        with self._lock:
            entry = self._connections.get(connection)
        return entry[0] if entry is not None else None

    def forget_connection(self, connection: socket.socket) -> None:
        """Stop tracking a connection that is being closed."""
        with self._lock:
            self._connections.pop(connection, None)

    def open_connection_count(self) -> int:
        """Return the number of tracked connections."""
        with self._lock:
            return len(self._connections)

    def _set_state(
        self,
        connection: socket.socket,
        state: ConnectionState,
        only_if_tracked: bool = True,
    ) -> None:
        with self._lock:
            if only_if_tracked and connection not in self._connections:
                return
            self._connections[connection] = (state, time.monotonic())

    def close_idle_connections(self) -> int:
        """Shut down idle connections so blocked workers wake up and exit."""
        now = time.monotonic()
        with self._lock:
            idle = [
                conn
                for conn, (state, since) in self._connections.items()
                if state is ConnectionState.IDLE
                or (
                    state is ConnectionState.NEW
                    and now - since >= NEW_CONNECTION_GRACE_SECONDS
                )
            ]
            for conn in idle:
                del self._connections[conn]
        for conn in idle:
            try:
                # Plain socket shutdown; SSLSocket.shutdown would drop the TLS
                # object out from under the worker still reading from it.
                socket.socket.shutdown(conn, socket.SHUT_RDWR)
            except OSError:
                pass
        return len(idle)

    def wait_for_workers(self, timeout: float) -> bool:
        """Wait for all worker threads to complete within the timeout.

        Idle connections are closed on every poll, so a connection that
        finishes its request during the wait does not hold its worker open.
        """
        deadline = time.monotonic() + timeout
        while True:
            self.close_idle_connections()
            with self._lock:
                # Registered workers that have not started yet still count.
                self._workers = {
                    w for w in self._workers if w.ident is None or w.is_alive()
                }
                active_workers = list(self._workers)
            if not active_workers:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                STATE_LOGGER.warning(
                    "Shutdown timeout exceeded",
                    extra={
                        "event": "shutdown_timeout",
                        "remaining_workers": len(active_workers),
                    },
                )
                return False
            for worker in active_workers:
                wait = min(WORKER_POLL_INTERVAL, remaining)
                if worker.ident is None:
                    time.sleep(wait)
                else:
                    worker.join(timeout=wait)
                if time.monotonic() >= deadline:
                    break
