"""
Tests for structured logging
"""
import json
import logging

import pytest

from parking_navigation.logging_config import PACKAGE_LOGGER, NavigationJsonFormatter, log_context, setup_logging


@pytest.fixture(autouse=True)
def restore_package_logger():
    logger = logging.getLogger(PACKAGE_LOGGER)
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate


def make_record(**extra):
    record = logging.LogRecord(
        name="parking_navigation.session", level=logging.INFO, pathname=__file__, lineno=1,
        msg="Navigation stopped", args=(), exc_info=None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Test JSON record layout"""

    def test_navigation_context(self):
        formatter = NavigationJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s')

        output = json.loads(formatter.format(make_record(**log_context("abc123", "route_1"))))

        assert output["message"] == "Navigation stopped"
        assert output["level"] == "INFO"
        assert output["logger"] == "parking_navigation.session"
        assert output["session_id"] == "abc123"
        assert output["route_id"] == "route_1"
        assert "timestamp" in output

    def test_missing_context_omitted(self):
        formatter = NavigationJsonFormatter('%(message)s')

        output = json.loads(formatter.format(make_record(**log_context())))

        assert "session_id" not in output
        assert "route_id" not in output


class TestSetupLogging:
    """Test handler installation"""

    def test_package_logger_only(self, config):
        root_handlers = list(logging.getLogger().handlers)

        logger = setup_logging(config=config)

        assert logger.name == "parking_navigation"
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, NavigationJsonFormatter)
        assert logging.getLogger().handlers == root_handlers

    def test_text_format_and_level(self, config):
        logger = setup_logging("debug", "text", config=config)

        assert logger.level == logging.DEBUG
        assert not isinstance(logger.handlers[0].formatter, NavigationJsonFormatter)

    def test_repeated_setup_replaces_handler(self, config):
        setup_logging(config=config)
        logger = setup_logging(config=config)

        assert len(logger.handlers) == 1
