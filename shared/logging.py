"""
Shared logging configuration for the rule resolution service.

Every component logs through ``get_logger("rules.<component>")``. Lines written
while a decision is being rendered carry its ``decision_id``, organization and
family, bound through ``decision_context``.
"""

import sys
import structlog
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from contextvars import ContextVar

decision_id_var: ContextVar[Optional[str]] = ContextVar('decision_id', default=None)
organization_id_var: ContextVar[Optional[str]] = ContextVar('organization_id', default=None)
family_var: ContextVar[Optional[str]] = ContextVar('family', default=None)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure JSON structured logging on stderr."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_component,
            add_decision_context,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
    structlog.get_logger("rules.logging").debug("Logging configured", service=service_name)


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Split "rules.resolver" style logger names into service and component."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        service, component = logger_name.split(".", 1)
        event_dict.setdefault("service", service)
        event_dict.setdefault("component", component)
    return event_dict


def add_decision_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy the bound decision context into the event, explicit fields win."""
    for key, var in (("decision_id", decision_id_var),
                     ("organization_id", organization_id_var),
                     ("family", family_var)):
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


@contextmanager
def decision_context(organization_id: str, family: str,
                     decision_id: Optional[str] = None) -> Iterator[str]:
    """Bind a decision's correlation fields for the duration of the block."""
    decision_id = decision_id or str(uuid.uuid4())
    tokens = [
        (decision_id_var, decision_id_var.set(decision_id)),
        (organization_id_var, organization_id_var.set(organization_id)),
        (family_var, family_var.set(family)),
    ]
    try:
        yield decision_id
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def current_decision_id() -> Optional[str]:
    return decision_id_var.get()


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
