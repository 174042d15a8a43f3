"""Structured logging for the CLI and the API.

Library modules log through ``logging.getLogger(__name__)``. Once
``setup_logging`` has run, those records are rendered by the same structlog
processor chain as the structlog loggers used by the CLI and API, so a run
submitted from the API and the job runner executing it share one format.
"""

import logging
import sys
from typing import Any, List, Optional

import structlog
from structlog.types import EventDict, Processor

from mlstudio import __version__
from mlstudio.config import settings

_configured = False


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", "mlstudio")
    event_dict.setdefault("version", __version__)
    event_dict["environment"] = settings.environment
    return event_dict


def _shared_processors() -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_service_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None, force: bool = False) -> None:
    """
    Configure structlog and route stdlib ``mlstudio.*`` records through it.

    Args:
        level: Log level name, defaults to ``settings.logging.level``
        log_format: ``json`` or ``text``, defaults to ``settings.logging.format``
        force: Reconfigure even if logging was already set up
    """
    global _configured
    if _configured and not force:
        return

    level_name = (level or settings.logging.level).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    renderer = _renderer(log_format or settings.logging.format)

    if settings.logging.output == "stdout":
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
    else:
        handler = logging.FileHandler(settings.logging.output)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    ))

    package_logger = logging.getLogger("mlstudio")
    for existing in list(package_logger.handlers):
        package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(log_level)
    # records are rendered here, not again by the root logger
    package_logger.propagate = False

    structlog.configure(
        processors=_shared_processors() + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structlog logger; pass an ``mlstudio.*`` name so it uses the package handler."""
    return structlog.get_logger(name)


def log_context(**fields: Any):
    """Bind fields (request id, run id...) to every log line emitted inside the block."""
    return structlog.contextvars.bound_contextvars(**fields)
