"""Context object shared across worker threads."""

from dataclasses import dataclass

from server.handlers.dispatcher import Dispatcher
from server.lifecycle.state import ServerLifecycle

DEFAULT_SOCKET_TIMEOUT = 60.0


@dataclass
class WorkerContext:
    """Dependencies shared across handler threads."""

    dispatcher: Dispatcher
    lifecycle: ServerLifecycle
    max_body_size: int
    socket_timeout: float = DEFAULT_SOCKET_TIMEOUT
