"""Worker thread logic for handling individual client connections."""

import logging
import socket
import ssl
import threading
from dataclasses import dataclass
from typing import Optional

from server.domain.correlation_id import (
    CorrelationLoggerAdapter,
    clear_correlation_id,
    generate_correlation_id,
    set_correlation_id,
)
from server.domain.http_types import HttpRequest, HttpResponse, status_line
from server.domain.response_builders import (
    bad_request_response,
    entity_too_large_response,
)
from server.lifecycle.state import ServerLifecycle
from server.pipeline.io import (
    RECV_CHUNK_SIZE,
    RequestEntityTooLarge,
    receive_request,
    send_response,
)
from server.transport.context import WorkerContext

WORKER_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("httpbin.transport.worker"), {}
)


@dataclass
class _WorkerResources:
    thread: threading.Thread
    client_socket: socket.socket
    client_addr_str: str


def _read_request_with_validation(
    client_socket: socket.socket,
    buffer: bytes,
    client_addr_str: str,
    context: WorkerContext,
    first_request: bool,
) -> tuple[Optional[HttpRequest], bytes, bool]:
    """Read the next request, marking the connection idle while waiting for it."""
    lifecycle = context.lifecycle
    if not buffer:
        if not first_request and not lifecycle.mark_idle(client_socket):
            return None, b"", True
        chunk = client_socket.recv(RECV_CHUNK_SIZE)
        if not chunk:
            if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                WORKER_LOGGER.debug(
                    "Client closed connection",
                    extra={"event": "client_disconnected", "client": client_addr_str},
                )
            return None, b"", True
        buffer = chunk
    lifecycle.mark_active(client_socket)

    try:
        request, buffer = receive_request(client_socket, buffer, context.max_body_size)
    except RequestEntityTooLarge:
        WORKER_LOGGER.warning(
            "Request body size exceeded limit",
            extra={
                "event": "body_size_exceeded",
                "client": client_addr_str,
                "limit": context.max_body_size,
            },
        )
        send_response(client_socket, entity_too_large_response(context.max_body_size))
        return None, b"", True
    except ValueError as error:
        WORKER_LOGGER.warning(
            "Malformed request received",
            extra={
                "event": "malformed_request",
                "client": client_addr_str,
                "error": str(error),
            },
        )
        send_response(client_socket, bad_request_response(None, str(error)))
        return None, b"", True

    if request is None:
        if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
            WORKER_LOGGER.debug(
                "Client disconnected during request",
                extra={"event": "client_disconnected", "client": client_addr_str},
            )
        return None, b"", True
    request.client = client_addr_str
    return request, buffer, False


def _dispatch(request: HttpRequest, context: WorkerContext) -> HttpResponse:
    try:
        return context.dispatcher.handle(request)
    except Exception as error:  # pylint: disable=broad-except
        WORKER_LOGGER.error(
            "Dispatcher raised an exception",
            extra={
                "event": "dispatch_error",
                "route": request.path,
                "error_type": type(error).__name__,
            },
            exc_info=True,
        )
        return HttpResponse(status_line(500), {}, b"", True)


def _process_request(
    request: HttpRequest,
    context: WorkerContext,
    client_socket: socket.socket,
) -> bool:
    response = _dispatch(request, context)
    if not context.lifecycle.keep_alives_enabled():
        response.close_connection = True
    send_response(client_socket, response, head_only=request.method == "HEAD")
    return response.close_connection


def _cleanup_worker(lifecycle: ServerLifecycle, resources: _WorkerResources) -> None:
    lifecycle.forget_connection(resources.client_socket)
    lifecycle.cleanup_worker(resources.thread)

    try:
        resources.client_socket.shutdown(socket.SHUT_WR)
    except OSError:
        pass
    resources.client_socket.close()

    WORKER_LOGGER.debug(
        "Socket closed",
        extra={"event": "socket_closed", "client": resources.client_addr_str},
    )
    clear_correlation_id()


def handle_client(
    client_socket: socket.socket,
    client_address: tuple,
    context: WorkerContext,
) -> None:
    """Process requests on a client socket until the connection is closed."""
    buffer = b""
    first_request = True
    client_addr_str = f"{client_address[0]}:{client_address[1]}"
    resources = _WorkerResources(
        threading.current_thread(), client_socket, client_addr_str
    )

    try:
        client_socket.settimeout(context.socket_timeout)
        if isinstance(client_socket, ssl.SSLSocket):
            client_socket.do_handshake()

        while True:
            set_correlation_id(generate_correlation_id())

            request, buffer, should_terminate = _read_request_with_validation(
                client_socket,
                buffer,
                client_addr_str,
                context,
                first_request,
            )
            first_request = False
            if should_terminate or request is None:
                break

            if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                WORKER_LOGGER.debug(
                    "Request line parsed",
                    extra={
                        "event": "request_line_parsed",
                        "method": request.method,
                        "route": request.path,
                    },
                )

            should_close = _process_request(request, context, client_socket)
            clear_correlation_id()
            if should_close:
                break
    except TimeoutError:
        WORKER_LOGGER.debug(
            "Connection timed out",
            extra={"event": "connection_timeout", "client": client_addr_str},
        )
    except (ConnectionError, OSError, UnicodeDecodeError) as error:
        WORKER_LOGGER.error(
            "Error handling client connection",
            extra={
                "event": "connection_error",
                "client": client_addr_str,
                "error_type": type(error).__name__,
            },
        )
    except Exception as error:  # pylint: disable=broad-except
        WORKER_LOGGER.error(
            "Unexpected error in worker",
            extra={
                "event": "worker_error",
                "client": client_addr_str,
                "error_type": type(error).__name__,
                "error": str(error),
            },
            exc_info=True,
        )
    finally:
        _cleanup_worker(context.lifecycle, resources)
