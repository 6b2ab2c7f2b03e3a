"""
AlpacaDeck Unit Tests - Logging Configuration

Unit tests for alpacadeck/logging_config.py.
Tests setup_logging, get_logger, set_service_level and the formatters.

Run:
    pytest tests/unit/test_logging_config.py -v
"""

import json
import logging
import tempfile
from pathlib import Path

import pytest

from alpacadeck.logging_config import (
    DEFAULT_BACKUP_COUNT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_BYTES,
    LOG_LEVELS,
    LOGGER_NAMESPACES,
    ColorFormatter,
    JsonFormatter,
    get_logger,
    set_service_level,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_loggers():
    """Put package loggers back the way other tests expect them."""
    names = list(LOGGER_NAMESPACES) + ["services.polling", "services.camera"]
    saved = {
        name: (logging.getLogger(name).level, list(logging.getLogger(name).handlers))
        for name in names
    }
    yield
    for name, (level, handlers) in saved.items():
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers[:] = handlers
        logger.setLevel(level)


def make_record(level=logging.INFO, msg="Camera connected"):
    return logging.LogRecord("alpacadeck.test", level, __file__, 1, msg, None, None)


# =============================================================================
# Test setup_logging Function
# =============================================================================

class TestSetupLogging:
    """Unit tests for setup_logging function."""

    def test_setup_logging_default(self):
        """Test setup_logging with default parameters."""
        setup_logging()

        for namespace in LOGGER_NAMESPACES:
            assert logging.getLogger(namespace).level == logging.INFO

    def test_setup_logging_custom_level(self):
        """Test setup_logging with custom log level."""
        setup_logging(log_level="DEBUG")

        assert logging.getLogger("alpacadeck").level == logging.DEBUG
        assert logging.getLogger("services").level == logging.DEBUG

    def test_setup_logging_lowercase_level(self):
        setup_logging(log_level="warning")
        assert logging.getLogger("alpacadeck").level == logging.WARNING

    def test_setup_logging_unknown_level_defaults_to_info(self):
        setup_logging(log_level="CHATTY")
        assert logging.getLogger("alpacadeck").level == logging.INFO

    def test_setup_logging_with_file(self):
        """Test setup_logging creates file handler when log_file specified."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "test.log"
            setup_logging(log_file=log_path)

            for namespace in LOGGER_NAMESPACES:
                handlers = logging.getLogger(namespace).handlers
                file_handlers = [h for h in handlers if hasattr(h, "baseFilename")]
                assert len(handlers) == 2
                assert len(file_handlers) == 1
                assert Path(file_handlers[0].baseFilename) == log_path

            file_handlers[0].close()

    def test_setup_logging_creates_parent_directory(self):
        """Test that setup_logging creates parent directories for log file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "subdir" / "nested" / "test.log"
            setup_logging(log_file=log_path)

            assert log_path.parent.exists()

            for h in logging.getLogger("alpacadeck").handlers:
                h.close()

    def test_setup_logging_clears_existing_handlers(self):
        """Test that setup_logging clears existing handlers on re-initialization."""
        setup_logging(log_level="INFO")
        setup_logging(log_level="DEBUG")

        assert len(logging.getLogger("alpacadeck").handlers) == 1
        assert len(logging.getLogger("services").handlers) == 1

    def test_json_format_selected(self):
        setup_logging(json_format=True)
        handler = logging.getLogger("alpacadeck").handlers[0]
        assert isinstance(handler.formatter, JsonFormatter)


# =============================================================================
# Test get_logger Function
# =============================================================================

class TestGetLogger:
    """Unit tests for get_logger function."""

    def test_get_logger_adds_prefix(self):
        assert get_logger("test_default").name == "alpacadeck.test_default"

    def test_get_logger_preserves_package_names(self):
        assert get_logger("alpacadeck.registry").name == "alpacadeck.registry"
        assert get_logger("services.polling.property_poller").name == "services.polling.property_poller"

    def test_get_logger_dunder_name(self):
        assert get_logger(__name__).name == f"alpacadeck.{__name__}"


# =============================================================================
# Test set_service_level Function
# =============================================================================

class TestSetServiceLevel:
    """Unit tests for set_service_level function."""

    def test_set_service_level_debug(self):
        set_service_level("polling", "DEBUG")
        assert logging.getLogger("services.polling").level == logging.DEBUG

    def test_set_service_level_case_insensitive(self):
        set_service_level("camera", "warning")
        assert logging.getLogger("services.camera").level == logging.WARNING

    def test_set_service_level_invalid_defaults_to_info(self):
        set_service_level("polling", "LOUD")
        assert logging.getLogger("services.polling").level == logging.INFO


# =============================================================================
# Test Formatters
# =============================================================================

class TestFormatters:
    """JSON and color formatter output."""

    def test_json_formatter(self):
        payload = json.loads(JsonFormatter().format(make_record()))

        assert payload["logger"] == "alpacadeck.test"
        assert payload["level"] == "INFO"
        assert payload["message"] == "Camera connected"
        assert "exception" not in payload

    def test_json_formatter_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            import sys
            record = make_record(logging.ERROR)
            record.exc_info = sys.exc_info()

        payload = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in payload["exception"]

    def test_color_formatter_wraps_message(self):
        output = ColorFormatter("%(levelname)s %(message)s").format(make_record(logging.WARNING))
        assert output.startswith("\033[33m")
        assert output.endswith("\033[0m")
        assert "WARNING Camera connected" in output


class TestDefaults:
    """Module constants."""

    def test_log_levels_mapping(self):
        assert LOG_LEVELS["DEBUG"] == logging.DEBUG
        assert LOG_LEVELS["CRITICAL"] == logging.CRITICAL
        assert len(LOG_LEVELS) == 5

    def test_default_constants(self):
        assert DEFAULT_MAX_BYTES == 10 * 1024 * 1024
        assert DEFAULT_BACKUP_COUNT == 5
        assert DEFAULT_LOG_LEVEL == "INFO"
