"""
AuditorService -- append-only trail of lifecycle transitions.

Responsibility:
    Writes one AuditEvent row per state transition, synchronously, inside
    the caller's transaction.  Provides trace queries for review.

Architecture position:
    Kernel > Services -- imperative shell, called by ProposalService,
    ContractService, ClientService and TemplateService.

Invariants enforced:
    - Best-effort: every write runs inside a SAVEPOINT.  A failed audit
      write is rolled back to the savepoint, logged as
      ``audit_write_failed`` and swallowed, so it never rolls back the
      business transaction that triggered it.
    - Append-only: there is no update or delete path.

Failure modes:
    - None surfaced to callers on write.  Reads propagate storage errors.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from deal_kernel.domain.clock import Clock, SystemClock
from deal_kernel.logging_config import get_logger
from deal_kernel.models.audit_event import AuditAction, AuditEvent

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    action: AuditAction
    occurred_at: datetime
    actor_id: UUID | None
    payload: dict[str, Any]
    ip_address: str | None


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity in chronological order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(e.action for e in self.entries)


class AuditorService:
    """
    Service for recording and reading lifecycle audit events.

    Non-goals:
        - Does NOT commit; rows become visible when the caller commits.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def record(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID | None,
        payload: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> AuditEvent | None:
        """
        Record one audit event.

        Non-critical: a storage failure is logged and None is returned.
        """
        try:
            with self._session.begin_nested():
                event = AuditEvent(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action,
                    actor_id=actor_id,
                    occurred_at=self._clock.now(),
                    payload=payload or {},
                    ip_address=ip_address,
                )
                self._session.add(event)
                self._session.flush()
        except SQLAlchemyError:
            logger.warning(
                "audit_write_failed",
                exc_info=True,
                extra={
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "action": action.value,
                },
            )
            return None

        logger.debug(
            "audit_event_recorded",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
            },
        )
        return event

    def record_transition(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID | None,
        from_status: str | None,
        to_status: str | None,
        ip_address: str | None = None,
        **details: Any,
    ) -> AuditEvent | None:
        """Record a status change with its before/after values."""
        payload = {"from_status": from_status, "to_status": to_status}
        payload.update(details)
        return self.record(
            entity_type, entity_id, action, actor_id, payload, ip_address
        )

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.occurred_at, AuditEvent.id)
        ).scalars().all()

        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=tuple(
                AuditTraceEntry(
                    action=AuditAction(e.action),
                    occurred_at=e.occurred_at,
                    actor_id=e.actor_id,
                    payload=e.payload or {},
                    ip_address=e.ip_address,
                )
                for e in events
            ),
        )

    def get_recent_events(self, limit: int = 50) -> list[AuditEvent]:
        return list(
            self._session.execute(
                select(AuditEvent)
                .order_by(AuditEvent.occurred_at.desc())
                .limit(limit)
            ).scalars().all()
        )
