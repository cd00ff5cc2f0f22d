"""Shared fixtures for unit tests."""

import logging

import pytest

from vrushie.domain.request_context import clear_request


@pytest.fixture(autouse=True)
def enable_log_propagation():
    """Ensure logs propagate to root so caplog can catch them."""
    logger = logging.getLogger("vrushie")
    old_propagate = logger.propagate
    old_level = logger.level
    logger.propagate = True
    yield
    logger.propagate = old_propagate
    logger.setLevel(old_level)


@pytest.fixture(autouse=True)
def reset_request_context():
    """Start every test without a bound request id or client id."""
    clear_request()
    yield
    clear_request()
