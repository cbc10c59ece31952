"""
Structured JSON logging for anonsync

Every module logs through ``get_logger(__name__)``. All module loggers hang
off the ``anonsync`` package logger, which is configured once: JSON lines via
python-json-logger, or plain text when LOG_FORMAT=text.
"""
import logging
import os
import sys
import time
from contextlib import contextmanager
from typing import Iterator

from pythonjsonlogger import jsonlogger

PACKAGE_LOGGER = "anonsync"

JSON_FORMAT = "%(timestamp)s %(level)s %(component)s %(message)s"
TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"


class SyncJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter for pipeline logs.

    Adds: timestamp, level, logger, component (the ``anonsync`` subpackage
    emitting the record) and thread.
    """

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["component"] = _component(record.name)
        log_record["thread"] = record.threadName


def _component(logger_name: str) -> str:
    parts = logger_name.split(".")
    if parts[0] == PACKAGE_LOGGER and len(parts) > 1:
        return parts[1]
    return logger_name


def configure_logging(level: str | None = None, format_type: str | None = None) -> logging.Logger:
    """
    Configure the package logger

    Args:
        level: Log level name (defaults to env var LOG_LEVEL, then INFO)
        format_type: "json" or "text" (defaults to env var LOG_FORMAT, then json)

    Returns:
        The configured ``anonsync`` logger
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    if (format_type or os.getenv("LOG_FORMAT", "json")) == "json":
        formatter: logging.Formatter = SyncJsonFormatter(JSON_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.handlers[:] = [handler]
    logger.setLevel(log_level)
    logger.propagate = False
    return logger


def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """
    Get a logger for a module, configuring the package logger on first use

    Args:
        name: Logger name, normally ``__name__``

    Returns:
        Logger instance
    """
    if not logging.getLogger(PACKAGE_LOGGER).handlers:
        configure_logging()
    return logging.getLogger(name)


@contextmanager
def log_operation(operation_name: str, logger: logging.Logger | None = None, **extra_fields) -> Iterator[None]:
    """
    Log the start, outcome and duration of a long-running operation

    Usage:
        with log_operation("Full backfill", logger=logger, page_size=1000):
            runner.run_full()
    """
    logger = logger or get_logger()
    fields = {"operation": operation_name, **extra_fields}
    started = time.monotonic()
    logger.info(f"Starting: {operation_name}", extra=fields)

    try:
        yield
    except Exception as e:
        logger.error(
            f"Failed: {operation_name}",
            extra={
                **fields,
                "status": "error",
                "error_type": type(e).__name__,
                "duration_seconds": round(time.monotonic() - started, 3),
            },
            exc_info=True,
        )
        raise

    logger.info(
        f"Completed: {operation_name}",
        extra={
            **fields,
            "status": "success",
            "duration_seconds": round(time.monotonic() - started, 3),
        },
    )
