"""
AlpacaDeck Logging Configuration

Provides centralized logging configuration for the AlpacaDeck device core
with support for:
- Structured JSON logging format (machine-parseable)
- Rotating file handlers with size limits
- Console output with optional color formatting
- Per-service log level configuration

Usage:
    from alpacadeck.logging_config import setup_logging, get_logger

    # Initialize logging at application startup
    setup_logging(log_level="INFO", log_file="alpacadeck.log")

    # Get a logger for your module
    logger = get_logger(__name__)
    logger.info("Camera connected")
"""

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Module-level constants
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5

# Log level mapping for per-service configuration
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Both top-level packages log under their module names
LOGGER_NAMESPACES = ("alpacadeck", "services")

_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, DEFAULT_DATE_FORMAT),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class ColorFormatter(logging.Formatter):
    """Prefix the level name with an ANSI color code."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = _COLORS.get(record.levelname)
        if color:
            return f"{color}{message}{_RESET}"
        return message


def _build_formatter(json_format: bool, color: bool) -> logging.Formatter:
    if json_format:
        return JsonFormatter()
    if color:
        return ColorFormatter(DEFAULT_LOG_FORMAT, DEFAULT_DATE_FORMAT)
    return logging.Formatter(DEFAULT_LOG_FORMAT, DEFAULT_DATE_FORMAT)


def setup_logging(
    log_level: str = DEFAULT_LOG_LEVEL,
    log_file: Optional[str | Path] = None,
    json_format: bool = False,
    enable_color: bool = True,
) -> None:
    """Configure logging for the AlpacaDeck application.

    Sets up the package loggers with console and optional file handlers.
    Should be called once at application startup.

    Args:
        log_level: Default logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. If provided, enables file logging
                  with rotation.
        json_format: If True, use structured JSON format for logs.
        enable_color: If True, enable colored console output (when stdout
                      is a terminal).

    Example:
        setup_logging(log_level="DEBUG", log_file="/var/log/alpacadeck.log")
    """
    level = LOG_LEVELS.get(log_level.upper(), logging.INFO)
    use_color = enable_color and sys.stdout.isatty()

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(_build_formatter(json_format, use_color))
    handlers.append(console_handler)

    if log_file:
        file_path = Path(log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=DEFAULT_MAX_BYTES,
            backupCount=DEFAULT_BACKUP_COUNT,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(_build_formatter(json_format, False))
        handlers.append(file_handler)

    for namespace in LOGGER_NAMESPACES:
        root_logger = logging.getLogger(namespace)
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        for handler in handlers:
            root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific module or service.

    Returns a child logger under the alpacadeck namespace unless the name
    already belongs to one of the package namespaces.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured logger instance
    """
    if not name.startswith(LOGGER_NAMESPACES):
        name = f"alpacadeck.{name}"
    return logging.getLogger(name)


def set_service_level(service_name: str, level: str) -> None:
    """Set log level for a specific service.

    Args:
        service_name: Name of the service package (e.g., "polling", "camera")
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Example:
        set_service_level("polling", "DEBUG")  # Verbose poller logging
        set_service_level("alpaca", "WARNING")  # Only transport warnings
    """
    logger = logging.getLogger(f"services.{service_name}")
    logger.setLevel(LOG_LEVELS.get(level.upper(), logging.INFO))
