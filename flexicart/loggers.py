"""
Logging configuration for the FlexiCart driver.

This module provides a centralized logging setup with support for:
- Console output with colored formatting
- File rotation with size limits
- Remote logging to Loki
"""

import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler
from typing import Final, Optional, Union

import colorlog
import httpx


# =============================================================================
# Constants
# =============================================================================

DEFAULT_LOG_FORMAT: Final[str] = (
    "%(name)s | %(asctime)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s"
)
DEFAULT_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"
MAX_LOG_FILE_SIZE: Final[int] = 5 * 1024 * 1024  # 5 MB
LOG_BACKUP_COUNT: Final[int] = 3
LOKI_TIMEOUT: Final[float] = 2.0


# =============================================================================
# Color Configuration
# =============================================================================

LOG_COLORS: Final[dict[str, str]] = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}


# =============================================================================
# Loki Integration
# =============================================================================

def send_to_loki(url: str, level: str, message: str, app: str) -> None:
    """
    Send a log entry to Loki.

    Args:
        url: Loki push endpoint.
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        message: Log message.
        app: Application name for Loki labels.
    """
    log_entry = {
        "streams": [
            {
                "stream": {"level": level, "app": app},
                "values": [[str(int(time.time() * 1e9)), message]],
            }
        ]
    }
    with httpx.Client() as client:
        client.post(url, json=log_entry, timeout=LOKI_TIMEOUT)


class LokiHandler(logging.Handler):
    """
    Logging handler that pushes records to Loki.

    Attributes:
        url: Loki push endpoint.
        app: Application name for Loki labels.
    """

    def __init__(self, url: str, app: str) -> None:
        """
        Initialize the Loki handler.

        Args:
            url: Loki push endpoint.
            app: Application name for Loki labels.
        """
        super().__init__()
        self.url = url
        self.app = app

    def emit(self, record: logging.LogRecord) -> None:
        """
        Emit a log record to Loki.

        Args:
            record: The log record to send.
        """
        try:
            send_to_loki(self.url, record.levelname.upper(), self.format(record), self.app)
        except Exception:
            self.handleError(record)


# =============================================================================
# Logger Factory
# =============================================================================

def get_logger(
    name: str,
    app: str = "flexicart",
    log_file: Optional[str] = "logs/flexicart.log",
    level: Union[int, str] = logging.DEBUG,
    loki_url: Optional[str] = None,
) -> logging.Logger:
    """
    Create and configure a logger with console, file, and Loki handlers.

    Args:
        name: Logger name ("flexicart" also captures the library modules).
        app: Application name for Loki labels.
        log_file: Path to the log file, None disables file logging.
        level: Logging level (default: DEBUG).
        loki_url: Loki push endpoint, None disables remote logging.

    Returns:
        Configured logger instance.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger_instance = logging.getLogger(name)
    logger_instance.setLevel(level)

    # Avoid duplicate handlers on repeated calls
    if logger_instance.handlers:
        return logger_instance

    console_formatter = colorlog.ColoredFormatter(
        "%(name)s | %(log_color)s%(asctime)s | %(levelname)s | "
        "%(funcName)s:%(lineno)d | %(message)s",
        datefmt=DEFAULT_DATE_FORMAT,
        log_colors=LOG_COLORS,
    )
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(console_formatter)
    logger_instance.addHandler(console_handler)

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_FILE_SIZE,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter(fmt=DEFAULT_LOG_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
        )
        logger_instance.addHandler(file_handler)

    if loki_url:
        loki_handler = LokiHandler(loki_url, app)
        # Never push debug hex dumps over the network
        loki_handler.setLevel(max(level, logging.INFO))
        loki_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
                datefmt=DEFAULT_DATE_FORMAT,
            )
        )
        logger_instance.addHandler(loki_handler)

    return logger_instance
