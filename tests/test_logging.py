"""Tests for the log channel options"""

import logging

import pytest

from widgetpack import LOG_LEVELS, ConfigError, CustomFormatter, LoggerOptions, setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    reporter = logging.getLogger("Reporter")
    handlers, level, reporter_level = root.handlers[:], root.level, reporter.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    reporter.setLevel(reporter_level)


def record(msg, level=logging.INFO, name="Reporter"):
    return logging.LogRecord(name, level, __file__, 1, msg, None, None)


class TestCustomFormatter:
    def test_prefix(self):
        formatter = CustomFormatter(prefix="XCon-Prod", use_color=False)
        assert formatter.format(record("hello")) == "[XCon-Prod] INFO - Reporter - hello"

    def test_plain(self):
        formatter = CustomFormatter(use_color=False)
        assert formatter.format(record("x", logging.WARNING)) == "WARNING - Reporter - x"

    def test_color(self):
        formatter = CustomFormatter(use_color=True)
        text = formatter.format(record("x", logging.ERROR))
        assert CustomFormatter.red in text
        assert text.endswith(" - x")

    def test_timestamp(self):
        formatter = CustomFormatter(timestamp=True, use_color=False)
        stamp = formatter.format(record("x")).split(" ")[0]
        assert len(stamp) == 8
        assert stamp.count(":") == 2


class TestSetupLogging:
    def test_level_from_options(self):
        setup_logging(LoggerOptions(log_level="error"), debug=False)
        assert logging.getLogger().level == logging.ERROR

    def test_report_always_shown(self):
        """Test the size report logger emits even at a warn level"""
        setup_logging(LoggerOptions(log_level="warn"), debug=False)
        assert logging.getLogger("Reporter").isEnabledFor(logging.INFO)
        assert not logging.getLogger("Resolver").isEnabledFor(logging.INFO)

    def test_disabled(self):
        setup_logging(LoggerOptions(enabled=False), debug=False)
        assert logging.getLogger().level == LOG_LEVELS["silent"]

    def test_debug(self):
        setup_logging(LoggerOptions(log_level="warn"), debug=True)
        assert logging.getLogger().level == logging.DEBUG

    def test_invalid_level(self):
        with pytest.raises(ConfigError):
            LoggerOptions.from_dict({"logLevel": "loud"})
