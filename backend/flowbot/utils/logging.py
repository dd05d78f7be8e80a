# /flowbot/utils/logging.py

import logging
import sys
import structlog
from flowbot.config.settings import settings

# Routes and the router log through structlog with key-value events; services
# use plain `logging` loggers. Both end up in one handler on the root logger.

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _level() -> int:
    if settings.log_level:
        return getattr(logging, settings.log_level)
    return logging.DEBUG if settings.environment == "development" else logging.INFO


def setup_logging():
    """
    Configure structlog over the standard library. Development gets the
    console renderer; every other environment emits one JSON object per line
    with the bound user_id/chat_id context of the event being dispatched.
    """
    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.environment == "development"
        else structlog.processors.JSONRenderer(ensure_ascii=False)
    )

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level, *pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(_level())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
