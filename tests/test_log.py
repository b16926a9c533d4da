"""Unit tests for the logging setup."""

from __future__ import annotations

import io
from collections.abc import Iterator

import pytest
from loguru import logger  # type: ignore[import-untyped]

from protect_bridge.log import configure_logging


@pytest.fixture(autouse=True)
def restore_sinks() -> Iterator[None]:
    """Remove the test sinks after each test."""
    yield
    logger.remove()


class TestConfigureLogging:
    """Test suite for configure_logging."""

    def test_level_filters_messages(self) -> None:
        """Test that messages below the level are dropped."""
        stream = io.StringIO()
        configure_logging(level='warning', sink=stream)

        logger.info('hidden')
        logger.warning('shown')

        output = stream.getvalue()
        assert 'hidden' not in output
        assert 'shown' in output
        assert 'WARNING' in output

    def test_debug_overrides_level(self) -> None:
        """Test that debug forces DEBUG output."""
        stream = io.StringIO()
        configure_logging(level='ERROR', debug=True, sink=stream)

        logger.debug('protocol chatter')

        assert 'protocol chatter' in stream.getvalue()

    def test_replaces_previous_sinks(self) -> None:
        """Test that only the newest sink receives messages."""
        first = io.StringIO()
        second = io.StringIO()
        configure_logging(sink=first)
        configure_logging(sink=second)

        logger.info('once')

        assert first.getvalue() == ''
        assert 'once' in second.getvalue()
