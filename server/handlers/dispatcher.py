"""Request dispatcher: routes parsed requests to endpoint handlers."""

import logging
import time
from typing import Callable, Optional

from server.domain.correlation_id import CorrelationLoggerAdapter
from server.domain.http_types import HttpRequest, HttpResponse
from server.domain.response_builders import not_found_response
from server.handlers.system_handlers import (
    handle_anything,
    handle_delay,
    handle_healthz,
    handle_hostname,
    handle_index,
    handle_status,
)

DISPATCH_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("httpbin.dispatcher"), {}
)


class Dispatcher:
    """Map inbound requests to responses.

    The dispatcher only knows the subset of configuration it needs: body and
    duration limits, an observability sink and, optionally, the real
    hostname to report.
    """

    def __init__(
        self,
        max_body_size: int,
        max_duration: float,
        observer: Optional[CorrelationLoggerAdapter] = None,
        hostname: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_body_size = max_body_size
        self.max_duration = max_duration
        self.hostname = hostname
        self._observer = observer if observer is not None else DISPATCH_LOGGER
        self._sleep = sleep

    def handle(self, request: HttpRequest) -> HttpResponse:
        """Route the request and record a request_completed event."""
        started = time.perf_counter()
        response = self._route(request)
        duration_ms = (time.perf_counter() - started) * 1000
        self._observer.info(
            "Request completed",
            extra={
                "event": "request_completed",
                "method": request.method,
                "route": request.path,
                "status_code": response.status_code,
                "bytes_out": len(response.body),
                "duration_ms": round(duration_ms, 3),
                "client": request.client,
                "user_agent": request.headers.get("user-agent", ""),
            },
        )
        return response

    def _route(self, request: HttpRequest) -> HttpResponse:
        path = request.path
        if path == "/":
            return handle_index(request)
        if path == "/healthz":
            return handle_healthz(request)
        if path == "/hostname":
            return handle_hostname(request, self.hostname)
        if path == "/anything" or path.startswith("/anything/"):
            return handle_anything(request)
        if path.startswith("/delay/"):
            return handle_delay(
                request, path[len("/delay/") :], self.max_duration, self._sleep
            )
        if path.startswith("/status/"):
            return handle_status(request, path[len("/status/") :])

        if self._observer.logger.isEnabledFor(logging.DEBUG):
            self._observer.debug(
                "No matching route found",
                extra={"event": "route_not_found", "route": path},
            )
        return not_found_response(request)
