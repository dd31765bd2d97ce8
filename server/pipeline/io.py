"""HTTP Input/Output operations."""

import logging
import socket
import urllib.parse
from typing import Optional, Tuple

from server.domain.correlation_id import (
    CorrelationLoggerAdapter,
    get_correlation_id,
    set_correlation_id,
)
from server.domain.http_types import HttpRequest, HttpResponse

IO_LOGGER = CorrelationLoggerAdapter(logging.getLogger("httpbin.pipeline.io"), {})

HEADER_DELIMITER = b"\r\n\r\n"
MAX_HEADER_BYTES = 64 * 1024
RECV_CHUNK_SIZE = 4096
SUPPORTED_VERSIONS = {"HTTP/1.0", "HTTP/1.1"}


class RequestEntityTooLarge(Exception):
    """Raised when a request body exceeds the configured limit."""


def parse_headers(lines: list[str]) -> dict[str, str]:
    """Convert raw header lines into a lowercase-keyed dictionary."""
    parsed = {}
    for line in lines:
        if ":" in line:
            name, value = line.split(":", 1)
            parsed[name.strip().lower()] = value.strip()
    return parsed


def parse_request_line(request_line: str) -> Tuple[str, str, str, str]:
    """Parse method, decoded path, raw query string and protocol version."""
    try:
        method, target, version = request_line.split(" ", 2)
    except ValueError as exc:
        raise ValueError("Invalid request line") from exc
    if version not in SUPPORTED_VERSIONS:
        raise ValueError("Unsupported protocol version")
    if not method.isalpha():
        raise ValueError("Invalid method")

    parsed_target = urllib.parse.urlsplit(target)
    path = urllib.parse.unquote(parsed_target.path)
    if not path.startswith("/"):
        raise ValueError("Invalid request target")
    return method.upper(), path, parsed_target.query, version


def determine_content_length(headers: dict[str, str], max_body_size: int) -> int:
    """Validate and return the declared Content-Length for the request."""
    if "transfer-encoding" in headers:
        raise ValueError("Chunked request bodies are not supported")
    header_value = headers.get("content-length")
    if header_value is None:
        return 0
    try:
        content_length = int(header_value)
    except ValueError as exc:
        raise ValueError("Invalid Content-Length") from exc
    if content_length < 0:
        raise ValueError("Negative Content-Length")
    if content_length > max_body_size:
        raise RequestEntityTooLarge
    return content_length


def receive_request(
    client_socket: socket.socket, buffer: bytes, max_body_size: int
) -> Tuple[Optional[HttpRequest], bytes]:
    """Read bytes from the socket until a complete request is available."""
    while HEADER_DELIMITER not in buffer:
        if len(buffer) > MAX_HEADER_BYTES:
            raise ValueError("Request header block too large")
        chunk = client_socket.recv(RECV_CHUNK_SIZE)
        if not chunk:
            return None, b""
        buffer += chunk

    header_block, remainder = buffer.split(HEADER_DELIMITER, 1)
    header_lines = header_block.decode("latin-1").split("\r\n")
    method, path, query, version = parse_request_line(header_lines[0])
    headers = parse_headers(header_lines[1:])

    incoming_correlation_id = headers.get("x-request-id")
    if incoming_correlation_id:
        set_correlation_id(incoming_correlation_id)

    content_length = determine_content_length(headers, max_body_size)

    while len(remainder) < content_length:
        chunk = client_socket.recv(RECV_CHUNK_SIZE)
        if not chunk:
            return None, b""
        remainder += chunk

    body = remainder[:content_length]
    leftover = remainder[content_length:]
    IO_LOGGER.debug(
        "Parsed request", extra={"method": method, "route": path, "bytes_in": len(body)}
    )
    return HttpRequest(method, path, headers, body, query, version), leftover


def send_response(
    client_socket: socket.socket, response: HttpResponse, head_only: bool = False
) -> None:
    """Serialize and send the HTTP response over the socket."""
    headers = dict(response.headers)

    correlation_id = get_correlation_id()
    if correlation_id:
        headers["X-Request-ID"] = correlation_id

    headers["Content-Length"] = str(len(response.body))
    if response.close_connection:
        headers["Connection"] = "close"
    header_lines = [response.status_line]
    header_lines.extend(f"{name}: {value}" for name, value in headers.items())
    header_block = "\r\n".join(header_lines).encode("latin-1") + HEADER_DELIMITER
    payload = header_block if head_only else header_block + response.body
    client_socket.sendall(payload)
    IO_LOGGER.debug(
        "Sent response",
        extra={"status_code": response.status_code, "bytes_out": len(response.body)},
    )
