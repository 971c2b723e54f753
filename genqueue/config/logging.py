import logging
import sys
from typing import Any, TextIO

import structlog

from .settings import Settings, settings as default_settings


def _service_fields(settings: Settings):
    """Processor stamping every event with the service name and environment."""

    def add_service_fields(logger: Any, method_name: str, event_dict: dict) -> dict:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("environment", settings.environment)
        return event_dict

    return add_service_fields


def build_processors(settings: Settings) -> list[Any]:
    processors: list[Any] = [
        # Request and job identifiers bound through contextvars
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
    ]
    if settings.debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[
                    structlog.processors.CallsiteParameter.MODULE,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                ]
            )
        )
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.extend(
            [
                _service_fields(settings),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ]
        )
    return processors


def setup_logging(settings: Settings | None = None, stream: TextIO | None = None) -> None:
    """
    Configure structured logging with structlog.

    ``stream`` defaults to stdout; the worker logs to stderr so command output stays clean.
    """
    settings = settings or default_settings
    stream = stream or sys.stdout
    level = getattr(logging, settings.log_level)

    logging.basicConfig(format="%(message)s", stream=stream, level=level)
    # APScheduler logs every trigger run at INFO
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Add request-specific context to all log messages."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def bind_job_context(**context: Any) -> None:
    """Bind job identifiers to every log line emitted while a job runs."""
    structlog.contextvars.bind_contextvars(**context)


def clear_job_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
