import logging
import sys

import structlog

from ..config import settings

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine")

SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.dev.set_exc_info,
    structlog.processors.TimeStamper(fmt="iso"),
]


def _renderer(fmt: str):
    if fmt == "console":
        return structlog.dev.ConsoleRenderer(colors=False)
    return structlog.processors.JSONRenderer()


def setup_logging(level: str | None = None, fmt: str | None = None):
    """Route structlog through stdlib logging; JSON unless LOG_FORMAT=console."""
    level_name = (level or settings.LOG_LEVEL).upper()
    output = (fmt or settings.LOG_FORMAT).lower()
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    structlog.configure(
        processors=[*SHARED_PROCESSORS, _renderer(output)],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger("shiftbook").info(
        "logging_initialized", level=level_name, format=output
    )
