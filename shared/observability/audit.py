"""Audit helpers for recording AI chat session events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import structlog

from .logger import get_logger, get_request_id

__all__ = [
    "AuditActor",
    "AuditRepository",
    "InMemoryAuditRepository",
    "SessionAuditEvent",
    "StdoutAuditRepository",
    "get_audit_repository",
    "record_session_audit",
]


class AuditActor(str, Enum):
    """Who caused an audited event."""

    USER = "user"
    SYSTEM = "system"


@dataclass(slots=True)
class SessionAuditEvent:
    """Structured payload describing an auditable conversation event."""

    event_type: str
    conversation_id: str
    practice_id: str | None = None
    actor_type: AuditActor = AuditActor.SYSTEM
    actor_id: str | None = None
    request_id: str | None = None
    service: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation of the audit entry."""

        return {
            "eventType": self.event_type,
            "conversationId": self.conversation_id,
            "practiceId": self.practice_id,
            "actorType": self.actor_type.value,
            "actorId": self.actor_id,
            "requestId": self.request_id,
            "service": self.service,
            "payload": dict(self.payload),
            "createdAt": self.created_at.isoformat(),
        }


class AuditRepository(Protocol):
    """Storage contract for session audit events."""

    async def persist(self, event: SessionAuditEvent) -> None:  # pragma: no cover - interface definition
        """Persist ``event`` to the underlying storage backend."""


class StdoutAuditRepository:
    """Persist audit entries to the configured logger."""

    def __init__(self) -> None:
        self._logger = get_logger("audit")

    async def persist(self, event: SessionAuditEvent) -> None:
        self._logger.info("session_audit", **event.to_dict())


class InMemoryAuditRepository:
    """Keep audit entries in a list; used by local runs and tests."""

    def __init__(self) -> None:
        self.events: list[SessionAuditEvent] = []

    async def persist(self, event: SessionAuditEvent) -> None:
        self.events.append(event)

    def event_types(self) -> list[str]:
        return [event.event_type for event in self.events]


_DEFAULT_REPOSITORY: AuditRepository | None = None


def get_audit_repository() -> AuditRepository:
    """Return the process-wide audit repository."""

    global _DEFAULT_REPOSITORY
    if _DEFAULT_REPOSITORY is None:
        _DEFAULT_REPOSITORY = StdoutAuditRepository()
    return _DEFAULT_REPOSITORY


async def record_session_audit(
    event_type: str,
    *,
    conversation_id: str,
    practice_id: str | None = None,
    actor_type: AuditActor = AuditActor.SYSTEM,
    actor_id: str | None = None,
    payload: dict[str, Any] | None = None,
    repository: AuditRepository | None = None,
) -> SessionAuditEvent:
    """Capture an audit event and persist it using ``repository``."""

    repo = repository or get_audit_repository()
    context = structlog.contextvars.get_contextvars()
    event = SessionAuditEvent(
        event_type=event_type,
        conversation_id=conversation_id,
        practice_id=practice_id,
        actor_type=actor_type,
        actor_id=actor_id,
        request_id=get_request_id(),
        service=context.get("service"),
        payload=dict(payload or {"conversationId": conversation_id}),
    )
    await repo.persist(event)
    return event
