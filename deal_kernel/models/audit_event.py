"""
Module: deal_kernel.models.audit_event
Responsibility: ORM persistence for the append-only record of lifecycle
    transitions.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Rows are only ever inserted (AuditorService has no update or delete).
    - actor_id is NULL only for token-authenticated external actors
      (prospect response, counterparty signing).

Minimum coverage (each transition produces one row):
    - PROPOSAL_CREATED ... PROPOSAL_CLIENT_RESPONDED
    - CONTRACT_MATERIALIZED ... CONTRACT_HARDBOUND_RECEIVED
    - TEMPLATE_* administrative changes
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from deal_kernel.db.base import Base, UUIDString


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Proposal lifecycle
    PROPOSAL_CREATED = "proposal_created"
    PROPOSAL_UPDATED = "proposal_updated"
    PROPOSAL_REVISED = "proposal_revised"
    PROPOSAL_APPROVED = "proposal_approved"
    PROPOSAL_REJECTED = "proposal_rejected"
    PROPOSAL_SENT = "proposal_sent"
    PROPOSAL_SEND_FAILED = "proposal_send_failed"
    PROPOSAL_EMAIL_RETRIED = "proposal_email_retried"
    PROPOSAL_CANCELLED = "proposal_cancelled"
    PROPOSAL_CLIENT_RESPONDED = "proposal_client_responded"

    # Contract lifecycle
    CONTRACT_MATERIALIZED = "contract_materialized"
    CONTRACT_REQUESTED = "contract_requested"
    CONTRACT_FULFILLED = "contract_fulfilled"
    CONTRACT_DRAFT_SAVED = "contract_draft_saved"
    CONTRACT_SENT_TO_CLIENT = "contract_sent_to_client"
    CONTRACT_SIGNED = "contract_signed"
    CONTRACT_HARDBOUND_RECEIVED = "contract_hardbound_received"

    # Client store
    CLIENT_PROVISIONED = "client_provisioned"

    # Template store
    TEMPLATE_CREATED = "template_created"
    TEMPLATE_UPDATED = "template_updated"
    TEMPLATE_DEFAULT_SET = "template_default_set"
    TEMPLATE_DEACTIVATED = "template_deactivated"


class AuditEvent(Base):
    """One recorded transition."""

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    # e.g. "Proposal", "Contract", "DocumentTemplate"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    action: Mapped[AuditAction] = mapped_column(String(50), nullable=False)

    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.entity_type}:{self.entity_id}>"
