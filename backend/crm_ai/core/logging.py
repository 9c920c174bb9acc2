"""
Structured logging configuration for the AI request pipeline.

All log lines are JSON (or console-rendered in development) and carry:
- timestamp (ISO 8601 format)
- level
- service (service name identifier)
- request_id, user_id and feature when a request context is bound

Blocked or raw prompt text must never be passed to a logger; log lengths and
identifiers instead.
"""
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import structlog
from structlog.types import Processor

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
feature_var: ContextVar[Optional[str]] = ContextVar("feature", default=None)

SERVICE_NAME = "crm_ai_pipeline"


def add_request_context(
    logger: structlog.BoundLogger,
    method_name: str,
    event_dict: Dict[str, Any],
) -> Dict[str, Any]:
    """Add request_id, user_id, feature and service name to every entry."""
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)

    user_id = user_id_var.get()
    if user_id:
        event_dict.setdefault("user_id", user_id)

    feature = feature_var.get()
    if feature:
        event_dict.setdefault("feature", feature)

    event_dict["service"] = SERVICE_NAME

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    service_name: Optional[str] = None,
    json_output: bool = True,
) -> None:
    """
    Configure structured logging for the pipeline.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Service name identifier (defaults to SERVICE_NAME)
        json_output: JSON lines when True, pretty console output when False
    """
    global SERVICE_NAME
    if service_name:
        SERVICE_NAME = service_name

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_request_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger (typically ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def generate_request_id() -> str:
    return str(uuid.uuid4())


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def get_user_id() -> Optional[str]:
    return user_id_var.get()


def get_feature() -> Optional[str]:
    return feature_var.get()


@contextmanager
def bind_request_context(
    feature: Optional[str] = None,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Iterator[str]:
    """
    Bind request-scoped fields for the duration of one pipeline call.

    Context variables are task-local, so concurrent ``generate_response``
    calls never see each other's values.

    Yields:
        The request id in effect (generated when not supplied).
    """
    rid = request_id or generate_request_id()
    tokens = (
        request_id_var.set(rid),
        user_id_var.set(user_id),
        feature_var.set(feature),
    )
    try:
        yield rid
    finally:
        request_id_var.reset(tokens[0])
        user_id_var.reset(tokens[1])
        feature_var.reset(tokens[2])
