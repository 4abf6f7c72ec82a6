"""
structlog setup for the CLI and embedding applications.
"""
import logging
from typing import Optional, TextIO

import structlog


_log_stream: Optional[TextIO] = None


def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure structlog.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Append plain key/value lines to this file instead of
            rendering to the console
    """
    global _log_stream

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if _log_stream is not None:
        _log_stream.close()
        _log_stream = None

    if log_file:
        _log_stream = open(log_file, "a")
        processors.append(structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "event"]
        ))
        logger_factory = structlog.PrintLoggerFactory(file=_log_stream)
    else:
        processors.append(structlog.dev.ConsoleRenderer())
        logger_factory = structlog.PrintLoggerFactory()

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=logger_factory,
        cache_logger_on_first_use=False,
    )
