"""Shared HTTP type definitions to avoid circular imports."""

from dataclasses import dataclass, field
from http import HTTPStatus


@dataclass
class HttpRequest:
    """Represents a parsed HTTP request."""

    method: str
    path: str
    headers: dict[str, str]
    body: bytes
    query: str = ""
    version: str = "HTTP/1.1"
    client: str = "-"


@dataclass
class HttpResponse:
    """Represents an HTTP response to be sent to a client."""

    status_line: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    close_connection: bool = False

    @property
    def status_code(self) -> int:
        """Numeric status parsed from the status line."""
        return int(self.status_line.split(" ", 2)[1])


def status_line(code: int) -> str:
    """Build an HTTP/1.1 status line for the given status code."""
    try:
        reason = HTTPStatus(code).phrase
    except ValueError:
        reason = "Unknown"
    return f"HTTP/1.1 {code} {reason}"


def should_close(request: HttpRequest) -> bool:
    """Determine whether the connection should be closed after responding."""
    connection = request.headers.get("connection", "").lower()
    if request.version == "HTTP/1.0":
        return connection != "keep-alive"
    return connection == "close"
