"""
Structured logging configuration.

Uses structlog for JSON-formatted logs with request-scoped context.
"""
import logging
import sys
from typing import Any, Callable

import structlog
from pythonjsonlogger import jsonlogger

from quote_payments.config import Settings


def app_context_processor(settings: Settings) -> Callable[..., dict[str, Any]]:
    """
    Build a processor that adds application context to log events.

    Args:
        settings: Application settings

    Returns:
        Callable: structlog processor
    """

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def setup_logging(settings: Settings) -> None:
    """
    Configure structured logging with JSON formatter.

    Sets up:
    - JSON-formatted logs, one object per line
    - Request ID context (bound by the API middleware)
    - Structured log fields

    structlog only enriches the event; ``render_to_log_kwargs`` passes the
    fields to the stdlib record as extras, and python-json-logger renders
    the record. The message is encoded once.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="@timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            app_context_processor(settings),
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(levelname)s %(name)s %(message)s",
        rename_fields={
            "levelname": "level",
            "name": "logger",
        },
    )
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    # Suppress noisy loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    logger = structlog.get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
