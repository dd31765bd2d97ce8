"""Unit tests for the per-connection worker loop."""

import logging
import socket
import threading
from unittest.mock import MagicMock

import pytest

from server.handlers.dispatcher import Dispatcher
from server.lifecycle.state import ServerLifecycle
from server.transport.context import WorkerContext
from server.transport.worker import handle_client

CLIENT_ADDRESS = ("127.0.0.1", 54321)


@pytest.fixture(name="client_sock")
def fixture_client_sock():
    """Mock client socket; tests set recv.side_effect."""
    return MagicMock(spec=socket.socket)


@pytest.fixture(name="context")
def fixture_context():
    """Worker context backed by a real dispatcher and lifecycle."""
    return WorkerContext(
        dispatcher=Dispatcher(max_body_size=16, max_duration=1.0),
        lifecycle=ServerLifecycle(),
        max_body_size=16,
        socket_timeout=1.0,
    )


def _sent(client_sock) -> list[bytes]:
    return [call.args[0] for call in client_sock.sendall.call_args_list]


def test_worker_serves_request_and_logs_events(client_sock, context, caplog):
    """A request is answered, then the worker exits when the client closes."""
    caplog.set_level(logging.DEBUG, logger="httpbin")
    client_sock.recv.side_effect = [
        b"GET /status/418 HTTP/1.1\r\nHost: localhost\r\n\r\n",
        b"",
    ]

    handle_client(client_sock, CLIENT_ADDRESS, context)

    responses = _sent(client_sock)
    assert len(responses) == 1
    assert responses[0].startswith(b"HTTP/1.1 418 I'm a Teapot\r\n")
    assert b"X-Request-ID: " in responses[0]
    client_sock.settimeout.assert_called_once_with(1.0)
    client_sock.close.assert_called_once()

    events = [getattr(r, "event", None) for r in caplog.records]
    assert "request_line_parsed" in events
    assert "request_completed" in events
    assert events[-1] == "socket_closed"
    completed = next(
        r for r in caplog.records if getattr(r, "event", None) == "request_completed"
    )
    assert completed.client == "127.0.0.1:54321"
    assert completed.correlation_id != "-"


def test_worker_serves_pipelined_requests(client_sock, context):
    """Keep-alive connections answer every buffered request in order."""
    client_sock.recv.side_effect = [
        b"GET /status/201 HTTP/1.1\r\n\r\nGET /status/202 HTTP/1.1\r\n\r\n",
        b"",
    ]

    handle_client(client_sock, CLIENT_ADDRESS, context)

    statuses = [response.split(b" ", 2)[1] for response in _sent(client_sock)]
    assert statuses == [b"201", b"202"]


def test_worker_closes_after_response_when_keep_alives_disabled(client_sock, context):
    """With keep-alives off only one request is served, marked Connection: close."""
    context.lifecycle.set_keep_alives_enabled(False)
    client_sock.recv.side_effect = [
        b"GET /healthz HTTP/1.1\r\n\r\nGET /healthz HTTP/1.1\r\n\r\n",
        b"",
    ]

    handle_client(client_sock, CLIENT_ADDRESS, context)

    responses = _sent(client_sock)
    assert len(responses) == 1
    assert b"Connection: close\r\n" in responses[0]


def test_worker_stops_waiting_once_keep_alives_disabled(client_sock, context):
    """A connection whose request finished after the switch is not kept idle."""

    def dispatch_then_disable(request):
        context.lifecycle.set_keep_alives_enabled(False)
        return Dispatcher(max_body_size=16, max_duration=1.0).handle(request)

    context.dispatcher = MagicMock(spec=Dispatcher)
    context.dispatcher.handle.side_effect = dispatch_then_disable
    client_sock.recv.side_effect = [b"GET /healthz HTTP/1.1\r\n\r\n"]

    handle_client(client_sock, CLIENT_ADDRESS, context)

    assert client_sock.recv.call_count == 1
    assert b"Connection: close\r\n" in _sent(client_sock)[0]


def test_worker_rejects_oversized_body(client_sock, context, caplog):
    """Bodies above the limit get a 413 and the connection closes."""
    caplog.set_level(logging.WARNING, logger="httpbin")
    client_sock.recv.side_effect = [
        b"POST /anything HTTP/1.1\r\nContent-Length: 17\r\n\r\n",
    ]

    handle_client(client_sock, CLIENT_ADDRESS, context)

    responses = _sent(client_sock)
    assert responses[0].startswith(b"HTTP/1.1 413 ")
    record = next(
        r for r in caplog.records if getattr(r, "event", None) == "body_size_exceeded"
    )
    assert record.client == "127.0.0.1:54321"
    assert record.limit == 16


def test_worker_rejects_malformed_request(client_sock, context):
    """Unparseable request lines get a closing 400."""
    client_sock.recv.side_effect = [b"NOT A REQUEST\r\n\r\n"]

    handle_client(client_sock, CLIENT_ADDRESS, context)

    response = _sent(client_sock)[0]
    assert response.startswith(b"HTTP/1.1 400 Bad Request\r\n")
    assert b"Connection: close\r\n" in response


def test_worker_turns_dispatcher_errors_into_500(client_sock, context, caplog):
    """A failing dispatcher yields a 500 and closes the connection."""
    caplog.set_level(logging.ERROR, logger="httpbin")
    context.dispatcher = MagicMock(spec=Dispatcher)
    context.dispatcher.handle.side_effect = RuntimeError("boom")
    client_sock.recv.side_effect = [b"GET / HTTP/1.1\r\n\r\n"]

    handle_client(client_sock, CLIENT_ADDRESS, context)

    response = _sent(client_sock)[0]
    assert response.startswith(b"HTTP/1.1 500 Internal Server Error\r\n")
    assert any(getattr(r, "event", None) == "dispatch_error" for r in caplog.records)


def test_head_request_omits_body(client_sock, context):
    """HEAD responses carry headers only."""
    client_sock.recv.side_effect = [b"HEAD / HTTP/1.1\r\nConnection: close\r\n\r\n"]

    handle_client(client_sock, CLIENT_ADDRESS, context)

    assert _sent(client_sock)[0].endswith(b"\r\n\r\n")


def test_worker_timeout_is_not_an_error(client_sock, context, caplog):
    """An idle client hitting the socket timeout is logged at debug only."""
    caplog.set_level(logging.DEBUG, logger="httpbin")
    client_sock.recv.side_effect = TimeoutError("timed out")

    handle_client(client_sock, CLIENT_ADDRESS, context)

    events = [getattr(r, "event", None) for r in caplog.records]
    assert "connection_timeout" in events
    assert "connection_error" not in events


def test_worker_cleans_up_tracking(client_sock, context):
    """Finished workers are removed from the lifecycle's bookkeeping."""
    lifecycle = context.lifecycle
    lifecycle.register_worker(threading.current_thread())
    lifecycle.track_connection(client_sock)
    client_sock.recv.side_effect = ConnectionResetError("reset")

    handle_client(client_sock, CLIENT_ADDRESS, context)

    assert not lifecycle.has_worker(threading.current_thread())
    assert lifecycle.open_connection_count() == 0
    client_sock.close.assert_called_once()
