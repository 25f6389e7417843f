"""structlog configuration module."""

import logging
import sys

import structlog


def setup_logging(debug: bool = False, log_level: str = "INFO") -> None:
    """
    Configure structlog and stdlib logging.

    In debug mode: colored, human-readable console output at DEBUG level.
    Otherwise: JSON output for log aggregation at ``log_level``.

    Args:
        debug: If True, use ConsoleRenderer and force DEBUG.
        log_level: Level name used outside debug mode; unknown names fall back to INFO.
    """
    level = logging.DEBUG if debug else logging.getLevelNamesMapping().get(
        log_level.upper(), logging.INFO
    )

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, user_id (from middleware)
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # SQLAlchemy and uvicorn log through stdlib; keep their output on stdout too.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
