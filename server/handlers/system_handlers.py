"""Endpoint handlers for index, health, hostname, delay, anything and status."""

import math
import time
import urllib.parse
from typing import Callable, Optional

from server.domain.durations import parse_duration
from server.domain.http_types import HttpRequest, HttpResponse
from server.domain.response_builders import (
    bad_request_response,
    empty_response,
    json_response,
    text_response,
)

DUMMY_HOSTNAME = "go-httpbin"

INDEX_TEXT = """httpbin-server: HTTP request and response service

  GET  /healthz          liveness probe
  GET  /hostname         hostname reported by the server
  ANY  /anything[/...]   echo of the request
  ANY  /delay/<seconds>  delayed echo, bounded by the max duration
  ANY  /status/<code>    empty response with the given status code
"""


def _request_echo(request: HttpRequest) -> dict:
    return {
        "method": request.method,
        "path": request.path,
        "args": dict(urllib.parse.parse_qsl(request.query, keep_blank_values=True)),
        "headers": dict(request.headers),
        "data": request.body.decode("utf-8", errors="replace"),
        "origin": request.client,
    }


def handle_index(request: HttpRequest) -> HttpResponse:
    """Describe the available endpoints."""
    return text_response(INDEX_TEXT, request)


def handle_healthz(request: HttpRequest) -> HttpResponse:
    """Return 200 while the dispatcher is able to answer requests."""
    return empty_response(request, 200)


def handle_hostname(request: HttpRequest, hostname: Optional[str]) -> HttpResponse:
    """Report the real hostname when configured, otherwise a dummy value."""
    return json_response({"hostname": hostname or DUMMY_HOSTNAME}, request)


def handle_anything(request: HttpRequest) -> HttpResponse:
    """Echo the request back as JSON."""
    return json_response(_request_echo(request), request)


def parse_delay(raw: str) -> float:
    """Accept either plain seconds (``1.5``) or a duration expression (``1500ms``)."""
    try:
        return float(raw)
    except ValueError:
        return parse_duration(raw)


def handle_delay(
    request: HttpRequest,
    raw_delay: str,
    max_duration: float,
    sleep: Callable[[float], None] = time.sleep,
) -> HttpResponse:
    """Sleep for the requested delay, which may not exceed max_duration."""
    try:
        delay = parse_delay(raw_delay)
    except ValueError:
        return bad_request_response(request, f"invalid delay {raw_delay!r}")
    if math.isnan(delay) or delay < 0 or delay > max_duration:
        return bad_request_response(
            request, f"delay must be between 0 and {max_duration:g} seconds"
        )
    sleep(delay)
    return json_response(_request_echo(request), request)


def handle_status(request: HttpRequest, raw_code: str) -> HttpResponse:
    """Answer with the requested status code and no body."""
    if not raw_code.isdigit():
        return bad_request_response(request, f"invalid status code {raw_code!r}")
    code = int(raw_code)
    if not 200 <= code <= 599:
        return bad_request_response(request, f"invalid status code {raw_code!r}")
    return empty_response(request, code)
