"""
Centralized logging configuration.
Provides structured logging with support for multiple formats and outputs.
"""

import json
import logging
import logging.config
import os
import sys
from collections.abc import MutableMapping
from datetime import datetime, timezone
from functools import cache
from pathlib import Path
from typing import Any

_RESERVED_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "getMessage", "message", "taskName",
}


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Context passed through ``extra`` (cycle_id, job_type, artifact_id...)
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        levelname = record.levelname
        if levelname in self.COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        return super().format(record)


def setup_logging(
    name: str,
    level: str | None = None,
    log_file: Path | None = None,
    use_json: bool | None = None,
) -> logging.Logger:
    """
    Set up logging for a module.

    Args:
        name: Logger name (usually __name__)
        level: Log level (default from DRVAULT_LOG_LEVEL)
        log_file: Log file path (default from DRVAULT_LOG_FILE)
        use_json: Use JSON format (default from DRVAULT_LOG_FORMAT)

    Returns:
        Configured logger instance
    """
    # A logging config file takes over the whole configuration
    cfg_path = Path(os.environ.get("DRVAULT_LOGGING_CONFIG", "config/logging.yaml"))
    if cfg_path.exists():
        import yaml

        config_dict = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
        logging.config.dictConfig(config_dict)
        return logging.getLogger(name)

    logger = logging.getLogger(name)

    level = level or os.environ.get("DRVAULT_LOG_LEVEL", "INFO")
    env_log_file = os.environ.get("DRVAULT_LOG_FILE")
    log_file = log_file or (Path(env_log_file) if env_log_file else None)
    if use_json is None:
        use_json = os.environ.get("DRVAULT_LOG_FORMAT", "text").lower() == "json"

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)
    logger.handlers.clear()

    # Logs go to stderr; stdout carries the machine-parsable CLI summary
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)

    console_formatter: logging.Formatter
    if use_json:
        console_formatter = JSONFormatter()
    elif sys.stderr.isatty():
        console_formatter = ColoredFormatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            JSONFormatter() if use_json else logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
        )
        logger.addHandler(file_handler)

    logger.propagate = False

    return logger


@cache
def get_logger(name: str) -> logging.Logger:
    """
    Get or create a logger with default configuration.
    Cached to avoid recreating loggers.
    """
    return setup_logging(name)


class CycleContextAdapter(logging.LoggerAdapter):
    """Merges the cycle context into per-call ``extra`` instead of replacing it."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger_with_context(name: str, **context: Any) -> CycleContextAdapter:
    """
    Get a logger with additional context.

    Args:
        name: Logger name
        **context: Additional context to include in logs

    Returns:
        Logger adapter with context
    """
    return CycleContextAdapter(get_logger(name), context)
