"""Shared fixtures for unit tests."""

import logging

import pytest

from server.bootstrap.logging_setup import LOGGER_NAME
from server.domain.correlation_id import clear_correlation_id


@pytest.fixture(autouse=True)
def project_logger_to_caplog():
    """Let httpbin records reach caplog and undo level changes afterwards."""
    logger = logging.getLogger(LOGGER_NAME)
    old_propagate = logger.propagate
    old_level = logger.level
    logger.propagate = True
    yield logger
    logger.propagate = old_propagate
    logger.setLevel(old_level)


@pytest.fixture(autouse=True)
def fresh_correlation_id():
    """Each test starts outside of any request context."""
    clear_correlation_id()
    yield
    clear_correlation_id()
