"""Structured logging for the cntx index.

Index modules log through ``get_logger(__name__)`` with key/value fields.
structlog renders those events; plain stdlib records (from libraries, or
from code that bypasses structlog) go to the same handlers.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog
from structlog.stdlib import LoggerFactory

if TYPE_CHECKING:
    from cntx.config import Settings

# Attributes every LogRecord carries; anything else was added as context
_RECORD_FIELDS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

# Third-party loggers that are noisy at INFO while models load
_QUIET_LOGGERS = ("sentence_transformers", "transformers", "boto3", "botocore", "urllib3", "filelock")

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Render a stdlib record as one JSON line, keeping context attributes."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_FIELDS
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextFilter(logging.Filter):
    """Stamp fixed context, such as the workspace, onto every record."""

    def __init__(self, context: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.context = dict(context or {})

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            setattr(record, key, value)
        return True


def _structlog_processors(format_type: str) -> List[Any]:
    renderer = (
        structlog.processors.JSONRenderer()
        if format_type == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def _handler(handler: logging.Handler, formatter: logging.Formatter,
             context: Optional[Dict[str, Any]]) -> logging.Handler:
    handler.setFormatter(formatter)
    if context:
        handler.addFilter(ContextFilter(context))
    return handler


def configure_logging(
    level: str = "INFO",
    format_type: str = "json",
    log_file: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Configure structlog and the root logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: ``json`` for one JSON object per line, ``text`` for console output
        log_file: Optional path; file output is always JSON
        context: Fields stamped onto every stdlib record
    """
    structlog.configure(
        processors=_structlog_processors(format_type),
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # structlog output is already rendered; only stdlib records need formatting
    console_formatter = (
        logging.Formatter("%(message)s") if format_type == "json" else logging.Formatter(_TEXT_FORMAT)
    )
    # stderr keeps stdout free for whatever embeds the index
    handlers = [_handler(logging.StreamHandler(sys.stderr), console_formatter, context)]

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(_handler(logging.FileHandler(path, encoding="utf-8"), JSONFormatter(), context))

    logging.basicConfig(level=getattr(logging, level.upper()), handlers=handlers, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_from_settings(settings: "Settings") -> None:
    """Apply the ``log_*`` settings, tagging records with the workspace root."""
    configure_logging(
        level=settings.log_level,
        format_type=settings.log_format,
        log_file=settings.log_file,
        context={"workspace": str(settings.workspace_root)},
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """Bind fields to a logger for the duration of a block.

    An exception leaving the block is logged with the bound fields and
    re-raised.
    """

    def __init__(self, logger: structlog.stdlib.BoundLogger, **context):
        self.logger = logger
        self.context = context
        self.bound_logger: Optional[structlog.stdlib.BoundLogger] = None

    def __enter__(self) -> structlog.stdlib.BoundLogger:
        self.bound_logger = self.logger.bind(**self.context)
        return self.bound_logger

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            self.bound_logger.error(
                "Operation failed",
                error_type=exc_type.__name__,
                error=str(exc_val),
                exc_info=(exc_type, exc_val, exc_tb),
            )
        return False
