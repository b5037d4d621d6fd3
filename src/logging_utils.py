"""Consolidated structured logging configuration for the sprint assistant."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

# Log file path
LOG_PATH = Path(__file__).resolve().parent.parent / "logs" / "assistant.log"

LOGGER_NAME = "sprint_assistant"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging with correlation IDs and extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with structured extra data."""
        log_data = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "extra": getattr(record, "extra", {}),
        }
        return json.dumps(log_data, default=str)


def setup_logger(
    name: str = LOGGER_NAME,
    level: int | str = logging.INFO,
    log_path: Optional[Path] = LOG_PATH,
    json_format: bool = True,
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure structured logging with both file and console output.

    - File output: JSON-formatted logs to logs/assistant.log
    - Console output: Human-readable format for debugging

    Child loggers (``sprint_assistant.security``) inherit these handlers.

    Args:
        name: Logger name (default: "sprint_assistant")
        level: Logging level (default: INFO)
        log_path: JSON log file, or None to skip the file handler

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Prevent duplicate handlers if already configured
    if logger.handlers:
        return logger

    logger.setLevel(level)
    logger.propagate = False

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter() if json_format else logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler()
        console_formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    return logger


def configure_from(logging_config: Any) -> logging.Logger:
    """Re-configure the root assistant logger from a ``LoggingConfig``."""
    root = logging.getLogger(LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    return setup_logger(
        level=logging_config.log_level,
        log_path=logging_config.log_path,
        json_format=logging_config.json_format,
        console_output=logging_config.console_output,
    )


def log_security_event(event: str, fields: Dict[str, Any]) -> None:
    """Emit a security event on the dedicated child logger."""
    security_logger.warning(event, extra={"extra": {"security_event": True, **fields}})


# Initialize global logger instance
logger = logging.getLogger(LOGGER_NAME)
security_logger = logging.getLogger(f"{LOGGER_NAME}.security")
