"""
Module: deal_kernel.models.contract
Responsibility: ORM persistence for contracts derived from sent proposals.
    Carries the structured contract details (JSON) plus denormalized display
    columns, document references for each stage, the counterparty
    submission token and the link to the provisioned client.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/lifecycle.py only.

Invariants enforced:
    - proposal_id is unique: a proposal has at most one contract.
    - submission_token is set exactly when the contract is sent to the
      client; signed_at is written once, by the sent_to_client -> signed
      claim.
    - client_id is set only together with the signed status.

Failure modes:
    - IntegrityError on a second contract for the same proposal.
"""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Date, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from deal_kernel.db.base import TrackedBase, UUIDString
from deal_kernel.domain.lifecycle import ContractStatus


class Contract(TrackedBase):
    """A contract moving through request, fulfilment, signing and hardbound receipt."""

    __tablename__ = "contracts"

    __table_args__ = (
        Index("idx_contract_status", "status"),
        Index("idx_contract_requester", "requested_by"),
    )

    proposal_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("proposals.id"),
        nullable=False,
        unique=True,
    )

    status: Mapped[ContractStatus] = mapped_column(
        String(24),
        nullable=False,
        default=ContractStatus.PENDING_REQUEST,
    )

    template_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Request
    requested_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requested_at: Mapped[datetime | None] = mapped_column(nullable=True)
    request_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_template_key: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Structured details and their display columns
    contract_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    contract_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    client_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contract_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    contract_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    contract_duration: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Admin fulfilment
    document_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    edited_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    fulfilled_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Counterparty delivery
    sent_to_client_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    sent_to_client_at: Mapped[datetime | None] = mapped_column(nullable=True)
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    submission_token: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Signing
    signed_document_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    signed_by_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("clients.id"), nullable=True
    )

    # Physical copy
    hardbound_document_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    hardbound_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    hardbound_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Contract proposal={self.proposal_id} [{self.status}]>"
