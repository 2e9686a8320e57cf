"""
Structured logging for the controller.

Every event carries the controller identity. Events logged while a work item
or a deployment is being reconciled also carry that object, bound through
structlog context variables, so concurrent workers produce separable streams.
JSON is rendered in production, colored console output everywhere else.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor

from backup_controller.config.settings import settings
from backup_controller.models.operation import OperationItem


def add_controller_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add controller identity to log events."""
    event_dict["app"] = settings.app_name
    event_dict["version"] = settings.app_version
    event_dict["component"] = settings.component_name
    event_dict.setdefault("namespace", settings.namespace)
    return event_dict


def add_severity_level(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add severity level for Google Cloud Logging compatibility."""
    if "level" in event_dict:
        event_dict["severity"] = event_dict["level"].upper()
    return event_dict


@contextmanager
def bind_work_item(item: OperationItem) -> Iterator[None]:
    """Attach a work item to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(
        kind=item.kind,
        namespace=item.namespace,
        backup=item.name,
    ):
        yield


@contextmanager
def bind_deployment(namespace: str, name: str) -> Iterator[None]:
    """Attach a deployment to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(namespace=namespace, deployment=name):
        yield


def configure_logging() -> None:
    """Configure structured logging for the controller."""

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_controller_context,
        add_severity_level,
        structlog.processors.format_exc_info,
    ]

    if settings.is_production:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=shared_processors + [renderer],  # type: ignore
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )

    # Probes and scrapes hit the access log every few seconds
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # Watch streams and driver sessions log every request at INFO
    logging.getLogger("kubernetes_asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a configured structlog logger.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)
