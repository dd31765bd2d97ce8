"""Pure HTTP response builders."""

import json
from typing import Any, Optional

from server.domain.http_types import HttpRequest, HttpResponse, should_close, status_line


def _keeps_alive(request: Optional[HttpRequest]) -> bool:
    return request is not None and not should_close(request)


def text_response(
    message: str, request: Optional[HttpRequest], code: int = 200
) -> HttpResponse:
    """Return a text/plain response honoring the caller's connection preference."""
    return HttpResponse(
        status_line(code),
        {"Content-Type": "text/plain; charset=utf-8"},
        message.encode(),
        not _keeps_alive(request),
    )


def json_response(
    payload: Any, request: Optional[HttpRequest], code: int = 200
) -> HttpResponse:
    """Return an application/json response with a stable, indented body."""
    body = json.dumps(payload, indent=2, sort_keys=True).encode() + b"\n"
    return HttpResponse(
        status_line(code),
        {"Content-Type": "application/json; charset=utf-8"},
        body,
        not _keeps_alive(request),
    )


def empty_response(request: HttpRequest, code: int) -> HttpResponse:
    """Return a response with the given status and no body."""
    return HttpResponse(status_line(code), {}, b"", should_close(request))


def not_found_response(request: HttpRequest) -> HttpResponse:
    """Return a 404 response reusing the connection preference."""
    return text_response("Not Found\n", request, 404)


def bad_request_response(
    request: Optional[HttpRequest], reason: str = "Bad Request"
) -> HttpResponse:
    """Produce a 400 response; without a parsed request the connection closes."""
    return json_response({"error": reason}, request, 400)


def entity_too_large_response(limit: int) -> HttpResponse:
    """Produce a 413 response that always closes the connection."""
    return HttpResponse(
        status_line(413),
        {"Content-Type": "application/json; charset=utf-8"},
        json.dumps({"error": f"request body exceeds {limit} bytes"}).encode(),
        True,
    )


def draining_response() -> HttpResponse:
    """Produce a 503 response indicating the server is draining."""
    return HttpResponse(
        status_line(503),
        {"Connection": "close", "Retry-After": "1"},
        b"draining",
        True,
    )
