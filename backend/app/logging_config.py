from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor

from backend.app.config import AppSettings
from backend.app.telemetry import TELEMETRY_LOGGER_NAME

LOGGER_NAME = "stream_guide"
SERVICE_NAME = "stream-guide"
LOG_FILE_NAME = "stream-guide.log"
TELEMETRY_LOG_FILE_NAME = "stream-guide-telemetry.log"


def configure_application_logging(settings: AppSettings) -> Path:
    """Route ``stream_guide`` loggers to a JSON file and a console stream.

    Telemetry events get their own file. Every line carries the service name
    and the configured refresh strategy; cycle and tick ids arrive through
    structlog contextvars while a refresh is running.
    """
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME
    telemetry_log_file = log_dir / TELEMETRY_LOG_FILE_NAME

    static_context = _StaticContext(
        service=SERVICE_NAME,
        refresh_strategy=settings.refresh_strategy,
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    app_logger = _reset_logger(LOGGER_NAME, logging.DEBUG)
    app_logger.addHandler(_console_handler(_resolve_log_level(settings.log_level), static_context))
    app_logger.addHandler(_file_handler(log_file, logging.DEBUG, static_context))

    telemetry_logger = _reset_logger(TELEMETRY_LOGGER_NAME, logging.INFO)
    telemetry_logger.addHandler(_file_handler(telemetry_log_file, logging.INFO, static_context))

    app_logger.info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        logging.getLevelName(_resolve_log_level(settings.log_level)),
        log_file,
        telemetry_log_file,
    )
    return log_file


class _StaticContext:
    """Adds process-wide fields without overriding values bound per call."""

    def __init__(self, **fields: str) -> None:
        self._fields = fields

    def __call__(
        self,
        _logger: logging.Logger,
        _method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        for key, value in self._fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def _resolve_log_level(raw_level: str) -> int:
    return logging.getLevelNamesMapping().get(raw_level.strip().upper(), logging.INFO)


def _reset_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    return logger


def _foreign_pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
    ]


def _file_handler(path: Path, level: int, static_context: _StaticContext) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_foreign_pre_chain(),
            processors=[
                static_context,
                structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
                _add_source_location,
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
        )
    )
    return handler


def _console_handler(level: int, static_context: _StaticContext) -> logging.Handler:
    stream = sys.stdout
    handler = logging.StreamHandler(stream=stream)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_foreign_pre_chain(),
            processors=[
                static_context,
                structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=stream.isatty()),
            ],
        )
    )
    return handler


def _add_source_location(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["source"] = f"{record.name}:{record.lineno}"
        event_dict["thread_name"] = record.threadName
    return event_dict
