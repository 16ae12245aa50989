"""Observability utilities shared across services."""

from .logger import (
    bind_conversation,
    configure_logging,
    generate_request_id,
    get_logger,
    get_request_id,
    request_context,
)
from .middleware import CorrelationIdMiddleware, RequestTimingMiddleware
from .audit import (
    AuditActor,
    AuditRepository,
    InMemoryAuditRepository,
    SessionAuditEvent,
    StdoutAuditRepository,
    get_audit_repository,
    record_session_audit,
)

__all__ = [
    "AuditActor",
    "AuditRepository",
    "CorrelationIdMiddleware",
    "InMemoryAuditRepository",
    "RequestTimingMiddleware",
    "SessionAuditEvent",
    "StdoutAuditRepository",
    "bind_conversation",
    "configure_logging",
    "generate_request_id",
    "get_audit_repository",
    "get_logger",
    "get_request_id",
    "record_session_audit",
    "request_context",
]
