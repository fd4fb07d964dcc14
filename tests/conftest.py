"""Shared pytest fixtures."""

import pytest
import structlog


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration done by CLI runs.

    ``main()`` binds structlog to the stderr stream pytest captured for that
    test, which is closed once the test ends.
    """
    yield
    structlog.reset_defaults()
