"""Listening socket, connection acceptance loop and graceful shutdown."""

import errno
import logging
import socket
import ssl
import threading
import time
from typing import Callable, NoReturn, Optional

from server.bootstrap.config import ResolvedConfig
from server.bootstrap.socket_factory import create_server_socket, join_host_port
from server.domain.correlation_id import CorrelationLoggerAdapter
from server.domain.response_builders import draining_response
from server.handlers.dispatcher import Dispatcher
from server.lifecycle.state import ServerLifecycle
from server.pipeline.io import send_response
from server.transport.context import WorkerContext
from server.transport.worker import handle_client

ACCEPT_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("httpbin.transport.accept"), {}
)

TEMPORARY_ACCEPT_ERRNOS = {
    errno.ECONNABORTED,
    errno.EMFILE,
    errno.ENFILE,
    errno.ENOBUFS,
    errno.ENOMEM,
}
MIN_ACCEPT_BACKOFF = 0.005
MAX_ACCEPT_BACKOFF = 1.0
DRAINING_SEND_TIMEOUT = 1.0

SocketFactory = Callable[[str, int, Optional[str], Optional[str]], socket.socket]


class ServerClosed(Exception):
    """Raised by serve() and listen() once the listener has been shut down."""


class ShutdownTimeout(Exception):
    """Raised by shutdown() when in-flight requests outlive the deadline."""


class Listener:
    """HTTP(S) listener serving one dispatcher on a thread per connection.

    ``serve()`` runs on the calling thread; ``set_keep_alives_enabled()`` and
    ``shutdown()`` may be called from any other thread while it runs.
    """

    def __init__(
        self,
        config: ResolvedConfig,
        dispatcher: Dispatcher,
        lifecycle: Optional[ServerLifecycle] = None,
        socket_factory: SocketFactory = create_server_socket,
    ) -> None:
        self._config = config
        self._dispatcher = dispatcher
        self.lifecycle = lifecycle if lifecycle is not None else ServerLifecycle()
        self._socket_factory = socket_factory
        self._lock = threading.Lock()
        self._socket: Optional[socket.socket] = None
        self._bound_port: Optional[int] = None
        self._closed = False

    @property
    def scheme(self) -> str:
        return "https" if self._config.serve_tls else "http"

    @property
    def address(self) -> str:
        """host:port, using the bound port once listen() has succeeded."""
        port = self._bound_port if self._bound_port is not None else self._config.port
        return join_host_port(self._config.host, port)

    @property
    def bound_port(self) -> Optional[int]:
        return self._bound_port

    def listen(self) -> None:
        """Bind the listening socket. Bind and TLS errors propagate."""
        with self._lock:
            if self._closed:
                raise ServerClosed("listener is closed")
            if self._socket is not None:
                raise RuntimeError("listener is already bound")

        server_socket = self._socket_factory(
            self._config.host,
            self._config.port,
            self._config.tls_cert_path,
            self._config.tls_key_path,
        )

        with self._lock:
            if self._closed:
                server_socket.close()
                raise ServerClosed("listener is closed")
            self._socket = server_socket
            self._bound_port = server_socket.getsockname()[1]

    def serve(self) -> NoReturn:
        """Accept connections until shut down.

        Always raises: ServerClosed after shutdown(), or the underlying error
        when the accept loop fails on its own.
        """
        with self._lock:
            server_socket = self._socket
            closed = self._closed
        if server_socket is None:
            if closed:
                raise ServerClosed("listener is closed")
            raise RuntimeError("listen() must be called before serve()")

        context = WorkerContext(
            dispatcher=self._dispatcher,
            lifecycle=self.lifecycle,
            max_body_size=self._config.max_body_size,
        )
        backoff = 0.0
        try:
            while True:
                if self.lifecycle.should_stop():
                    raise ServerClosed("listener is closed")
                try:
                    client_socket, client_address = server_socket.accept()
                except socket.timeout:
                    continue
                except OSError as error:
                    if self.lifecycle.should_stop():
                        raise ServerClosed("listener is closed") from error
                    if error.errno not in TEMPORARY_ACCEPT_ERRNOS:
                        raise
                    backoff = min(
                        max(backoff * 2, MIN_ACCEPT_BACKOFF), MAX_ACCEPT_BACKOFF
                    )
                    ACCEPT_LOGGER.error(
                        "Socket accept failed, retrying",
                        extra={
                            "event": "accept_error",
                            "error_type": type(error).__name__,
                            "errno": error.errno,
                        },
                    )
                    time.sleep(backoff)
                    continue
                backoff = 0.0

                if self.lifecycle.is_draining():
                    self._reject_draining(client_socket)
                    continue

                self._start_worker(client_socket, client_address, context)
        finally:
            server_socket.close()

    def set_keep_alives_enabled(self, enabled: bool) -> None:
        """Allow or refuse persistent connections; refusing closes idle ones."""
        self.lifecycle.set_keep_alives_enabled(enabled)

    def shutdown(self, timeout: float) -> None:
        """Stop accepting, close idle connections and wait for in-flight work.

        Raises ShutdownTimeout when workers are still running after timeout.
        """
        with self._lock:
            self._closed = True
            server_socket = self._socket
        self.lifecycle.begin_draining()
        if server_socket is not None:
            try:
                # Wakes an accept() blocked in the serving thread.
                server_socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

        if not self.lifecycle.wait_for_workers(timeout):
            raise ShutdownTimeout(
                f"shutdown deadline of {timeout:g}s exceeded with "
                f"{self.lifecycle.active_worker_count()} request(s) in flight"
            )

    def _reject_draining(self, client_socket: socket.socket) -> None:
        try:
            if not isinstance(client_socket, ssl.SSLSocket):
                client_socket.settimeout(DRAINING_SEND_TIMEOUT)
                send_response(client_socket, draining_response())
        except OSError:
            pass
        finally:
            client_socket.close()

    def _start_worker(
        self,
        client_socket: socket.socket,
        client_address: tuple,
        context: WorkerContext,
    ) -> None:
        client_addr_str = f"{client_address[0]}:{client_address[1]}"
        if ACCEPT_LOGGER.logger.isEnabledFor(logging.DEBUG):
            ACCEPT_LOGGER.debug(
                "Client connection accepted",
                extra={"event": "client_accepted", "client": client_addr_str},
            )

        thread = threading.Thread(
            target=handle_client,
            args=(client_socket, client_address, context),
            name=f"worker-{client_addr_str}",
            daemon=True,
        )
        self.lifecycle.track_connection(client_socket)
        self.lifecycle.register_worker(thread)
        try:
            thread.start()
        except RuntimeError as error:
            self.lifecycle.cleanup_worker(thread)
            self.lifecycle.forget_connection(client_socket)
            client_socket.close()
            ACCEPT_LOGGER.error(
                "Failed to start worker thread",
                extra={
                    "event": "worker_start_failed",
                    "client": client_addr_str,
                    "error": str(error),
                },
            )
