import logging
import sys

import structlog


def _stderr_logger(*args) -> structlog.PrintLogger:
    # look sys.stderr up when the logger is built, it may have been swapped since configure()
    return structlog.PrintLogger(sys.stderr)


def configure_logging(level: str = "INFO", json: bool = False, cache: bool = True) -> None:
    """Configure structlog once for the whole process."""
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=cache,
    )
