import sys
import logging
from typing import Optional

import structlog

from kbsync.config import Settings, settings as default_settings


def setup_logging(settings: Optional[Settings] = None):
    """
    Configures structured logging.
    - JSON for Production (Docker friendly)
    - Colorful text for Local Dev
    """
    settings = settings or default_settings

    # 1. Set the underlying standard logging level
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=settings.LOG_LEVEL.upper(),
    )

    # 2. Shared processors (timestamp, log level, exception info)
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    # 3. Renderer depends on the environment
    if settings.APP_ENV == "production":
        processors = shared_processors + [structlog.processors.JSONRenderer()]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    """Return a logger bound with the module name"""
    return structlog.get_logger(name)
