"""Centralized logging for peer-call using structlog

Library code only calls ``get_logger(__name__)``; the entry point calls
``setup_logging`` once.
"""

import logging
import sys

import structlog


def setup_logging(level: str = "INFO", json_logs: bool = False, colored: bool = True):
    """Configure structlog, and route noisy stdlib loggers to stderr

    Args:
        level: Logging level string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Output JSON lines instead of the console renderer
        colored: Enable colored console output
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colored)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # aiortc, aioice and aiomqtt log through the standard library.
    logging.basicConfig(
        level=max(numeric_level, logging.WARNING),
        format="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def get_logger(name: str):
    """Get a structlog logger with the specified name

    Args:
        name: Logger name (usually __name__ of the module)
    """
    return structlog.get_logger(name)


def silence_noisy_modules(level: str = "WARNING"):
    """Raise the threshold of chatty third-party stdlib loggers"""
    for module in ("aioice", "aiortc", "aiomqtt", "av"):
        logging.getLogger(module).setLevel(level)
