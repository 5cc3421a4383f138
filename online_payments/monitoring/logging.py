"""
Structured logging for the payment service.

structlog renders every event as one JSON line on stdout. Records from
libraries (stripe, urllib3, SQLAlchemy, uvicorn) go through the same
stdout handler via python-json-logger so both streams share one shape.
"""
import logging
import sys
from typing import Any, Dict, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from online_payments.config import Settings, get_settings

HANDLER_NAME = "online_payments.stdout"


def library_levels(settings: Settings) -> Dict[str, int]:
    """Levels for third-party loggers; request-path noise stays at WARNING."""
    return {
        "stripe": logging.INFO,
        # RequestsClient connection pool chatter
        "urllib3": logging.WARNING,
        "sqlalchemy.engine": logging.INFO if settings.database_echo else logging.WARNING,
        "uvicorn.access": logging.WARNING,
    }


def _service_fields(settings: Settings) -> Any:
    fields = {"app_name": settings.app_name, "app_env": settings.app_env}

    def add_service_fields(
        logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_fields


def _processors(settings: Settings) -> List[Any]:
    return [
        # Request fields bound by the HTTP middleware
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="@timestamp"),
        structlog.processors.format_exc_info,
        _service_fields(settings),
        structlog.processors.JSONRenderer(sort_keys=True),
    ]


def _stdout_handler(settings: Settings) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "@timestamp",
                "levelname": "level",
                "name": "logger",
            },
            static_fields={"app_name": settings.app_name, "app_env": settings.app_env},
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; the stdout handler is replaced, not
    duplicated.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(_stdout_handler(settings))

    for name, level in library_levels(settings).items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        database_echo=settings.database_echo,
    )
