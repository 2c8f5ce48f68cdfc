"""Logging utilities for Toolgate.

Structured fields travel on log records as ``extra={"extra_fields": {...}}``
and are merged into the output by :class:`JsonFormatter`.
"""

from __future__ import annotations

import json
import logging as std_logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .config import ServerConfig

ROOT_LOGGER = "toolgate"

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    log_level: Union[str, int] = std_logging.INFO,
    log_file: Optional[Path] = None,
    log_format: str = "text",
) -> std_logging.Logger:
    """Setup logging for the ``toolgate`` logger hierarchy."""

    logger = std_logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)

    # Clear existing handlers
    logger.handlers.clear()

    detailed_formatter = std_logging.Formatter(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)
    json_formatter = JsonFormatter()

    # Console handler; stdout belongs to the stdio transport
    console_handler = std_logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(json_formatter if log_format == "json" else detailed_formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = std_logging.FileHandler(log_file)
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(json_formatter)
        logger.addHandler(file_handler)
        logger.setLevel(std_logging.DEBUG)

    logger.info("Toolgate logging initialized")
    return logger


def setup_logging_from_config(config: ServerConfig) -> std_logging.Logger:
    return setup_logging(config.log_level, config.log_file, config.log_format)


class JsonFormatter(std_logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: std_logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields: Any) -> None:
    """Log an error with rich context information."""
    logger = std_logging.getLogger(f"{ROOT_LOGGER}.errors")

    error_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields,
    }
    code = getattr(error, "code", None)
    if code:
        error_data["error_code"] = code

    logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {error}",
        extra={"extra_fields": error_data},
        exc_info=error,
    )
