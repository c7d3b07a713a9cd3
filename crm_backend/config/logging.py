"""
Logging Configuration for the CRM Backend

structlog events and stdlib records (uvicorn, gunicorn, SQLAlchemy) share one
stdout handler. Deployed environments render JSON; local runs use the
coloured console renderer.

Ledger events carry money as Decimal and states as str-Enums; they are
rendered as plain strings so JSON lines stay exact.
"""

import logging
import sys
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter
from structlog.types import EventDict, Processor, WrappedLogger

from crm_backend.config.settings import get_settings

# Server loggers that install their own handlers
CAPTURED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "gunicorn.error")

# Minimum levels for chatty libraries
QUIET_LOGGERS: Dict[str, int] = {
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
}


def render_ledger_values(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Decimal, Enum and date values as strings (12.50, "paid", ISO dates)."""
    for key, value in event_dict.items():
        event_dict[key] = _plain(value)
    return event_dict


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def _shared_processors() -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        render_ledger_values,
    ]


def configure_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Configure structured logging for the API, the seeder and gunicorn workers.

    Args:
        log_level: Override of LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)
        log_format: Override of the configured format ("json" or "text")
    """
    settings = get_settings()
    level = (log_level or settings.monitoring.log_level).upper()
    fmt = log_format or settings.monitoring.log_format
    numeric_level = getattr(logging, level, logging.INFO)

    shared_processors = _shared_processors()
    structlog.configure(
        processors=shared_processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer = JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(ProcessorFormatter(processor=renderer, foreign_pre_chain=shared_processors))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)

    for name in CAPTURED_LOGGERS:
        captured = logging.getLogger(name)
        captured.handlers = [handler]
        captured.propagate = False
        captured.setLevel(numeric_level)

    for name, minimum in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(numeric_level, minimum))

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=fmt,
        environment=settings.app_env,
    )
