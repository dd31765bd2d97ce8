"""Socket creation and TLS configuration."""

import logging
import socket
import ssl
from typing import Optional

from server.domain.correlation_id import CorrelationLoggerAdapter

SOCKET_LOGGER = CorrelationLoggerAdapter(logging.getLogger("httpbin.socket"), {})

ACCEPT_POLL_SECONDS = 0.5
LISTEN_BACKLOG = 128


def join_host_port(host: str, port: int) -> str:
    """Combine host and port into an address, bracketing IPv6 literals."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def create_tls_context(cert_path: str, key_path: str) -> ssl.SSLContext:
    """Load the certificate chain into a server-side TLS context."""
    try:
        tls_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        tls_context.load_cert_chain(cert_path, key_path)
    except (ssl.SSLError, OSError) as error:
        SOCKET_LOGGER.critical(
            "Failed to load TLS certificates",
            extra={"event": "tls_load_failed", "error": str(error)},
        )
        raise
    return tls_context


def create_server_socket(
    host: str,
    port: int,
    cert_path: Optional[str] = None,
    key_path: Optional[str] = None,
) -> socket.socket:
    """Bind the listening socket, optionally wrapping it in TLS.

    TLS handshakes are deferred to the worker thread that owns each accepted
    connection, so a slow client cannot stall the accept loop.
    """
    tls_context = None
    if cert_path and key_path:
        tls_context = create_tls_context(cert_path, key_path)

    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    server_socket = socket.create_server(
        (host, port), family=family, backlog=LISTEN_BACKLOG
    )
    server_socket.settimeout(ACCEPT_POLL_SECONDS)
    if tls_context is not None:
        server_socket = tls_context.wrap_socket(
            server_socket, server_side=True, do_handshake_on_connect=False
        )
    SOCKET_LOGGER.debug(
        "Listening socket bound",
        extra={
            "event": "socket_bound",
            "host": host,
            "port": port,
            "tls": tls_context is not None,
        },
    )
    return server_socket
