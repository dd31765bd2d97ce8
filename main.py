"""httpbin-server entrypoint: resolve configuration, serve, shut down on signal."""

import sys
from typing import Optional, Sequence

from server.bootstrap.config import load_config
from server.bootstrap.logging_setup import configure_logging
from server.domain.correlation_id import get_event_logger
from server.handlers.dispatcher import Dispatcher
from server.lifecycle.controller import LifecycleController


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Start the server and exit with the lifecycle controller's status."""
    config = load_config(sys.argv[1:] if argv is None else argv)
    configure_logging(
        config.log_level, config.log_destination, config.log_format == "json"
    )

    dispatcher = Dispatcher(
        max_body_size=config.max_body_size,
        max_duration=config.max_duration,
        observer=get_event_logger("dispatcher"),
        hostname=config.hostname,
    )
    controller = LifecycleController(
        config, dispatcher, events=get_event_logger("lifecycle")
    )
    sys.exit(controller.run())


if __name__ == "__main__":
    main()
