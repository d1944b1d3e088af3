"""
Module: deal_kernel.models.proposal
Responsibility: ORM persistence for proposals -- priced offers drafted for
    an inquiry, reviewed internally, then delivered to the prospect.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/lifecycle.py only.

Invariants enforced:
    - proposal_number is unique and never changes once allocated.
    - status and email_status are independent columns: a proposal can be
      ``approved`` with a ``failed`` delivery.
    - sent_at / sent_by are written only by the approved -> sent transition
      (ProposalService.send).

Failure modes:
    - IntegrityError on duplicate proposal_number.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from deal_kernel.db.base import TrackedBase, UUIDString
from deal_kernel.domain.lifecycle import EmailStatus, ProposalStatus


class Proposal(TrackedBase):
    """A proposal and its review and delivery state."""

    __tablename__ = "proposals"

    __table_args__ = (
        Index("idx_proposal_status", "status"),
        Index("idx_proposal_inquiry", "inquiry_id"),
        Index("idx_proposal_requester", "requested_by"),
    )

    proposal_number: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
    )

    inquiry_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    template_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    was_template_suggested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    requested_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    status: Mapped[ProposalStatus] = mapped_column(
        String(20),
        nullable=False,
        default=ProposalStatus.PENDING,
    )

    # Opaque payload (services, pricing, terms, template-specific fields)
    proposal_data: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )

    # Review
    reviewed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Delivery
    sent_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    email_status: Mapped[EmailStatus | None] = mapped_column(String(10), nullable=True)
    email_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    email_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    document_key: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Prospect response through the emailed links
    response_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_response: Mapped[str | None] = mapped_column(String(10), nullable=True)
    client_response_at: Mapped[datetime | None] = mapped_column(nullable=True)
    client_response_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<Proposal {self.proposal_number} [{self.status}]>"
