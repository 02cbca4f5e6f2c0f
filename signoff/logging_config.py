import logging

import structlog

from signoff.config import settings

# third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


def _add_service(logger, method_name, event_dict):
    event_dict.setdefault("service", settings.APP_NAME.lower())
    event_dict.setdefault("env", settings.ENVIRONMENT)
    return event_dict


def setup_logging():
    level = getattr(logging, settings.LOG_LEVEL)
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.ENVIRONMENT in ("development", "test")
        else structlog.processors.JSONRenderer()
    )

    logging.basicConfig(format="%(message)s", level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _add_service,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
