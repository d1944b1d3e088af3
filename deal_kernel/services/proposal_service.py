"""
ProposalService -- the proposal review and delivery state machine.

Responsibility:
    Drives a proposal from creation through review to delivery:

        create -> pending --approve--> approved --send--> sent
                    |  ^                  |
               reject  revise      (delivery failure keeps
                    v  |            status, email_status=failed)
                  rejected
        pending --cancel--> cancelled

    plus the admin-triggered delivery retry and the prospect's
    accept/decline response recorded through the emailed links.

Architecture position:
    Kernel > Services -- imperative shell.  Owns the transaction of every
    operation.  Collaborators (inquiry store, renderer, blob store,
    delivery gateway, notifier) are injected ports.

Invariants enforced:
    - Every transition is checked against PROPOSAL_TRANSITIONS and the
      proposal authorization policy before any write.
    - send is the one transition defended against races: after delivery,
      ``UPDATE ... WHERE id = :id AND status = 'approved'`` claims the
      approved -> sent move.  A second concurrent sender updates zero rows
      and receives ConflictingWriteError.
    - A delivery failure is persisted (email_status=failed, email_error,
      stored document reference) and the status stays approved, so an
      admin can retry without re-rendering.
    - sent_at / sent_by are written only together with status=sent.
    - rejection_reason is required on reject and cleared on revision.

Failure modes:
    - ProposalNotFoundError, InquiryNotFoundError, TemplateNotFoundError.
    - InvalidTransitionError when a status guard fails.
    - ForbiddenError for ownership / role / token failures.
    - ValidationFailedError for an empty rejection reason or bad payload.
    - RenderFailedError from the document renderer (no state change).
    - DeliveryFailedError after the failure has been persisted.
    - ConflictingWriteError when a concurrent writer moved the proposal.

Audit relevance:
    Each transition writes one AuditEvent (best-effort).  Notifications to
    the requester and the inquiry status advance are non-critical effects.
"""

from __future__ import annotations

import hmac
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from deal_kernel.domain.authorization import (
    Actor,
    Operation,
    check_proposal_access,
    require,
)
from deal_kernel.domain.clock import Clock
from deal_kernel.domain.documents import (
    build_proposal_document,
    check_proposal_shape,
    document_key,
)
from deal_kernel.domain.lifecycle import (
    PROPOSAL_EDITABLE,
    PROPOSAL_RETRYABLE,
    ClientResponse,
    EmailStatus,
    ProposalStatus,
    TemplateKind,
    proposal_sources,
)
from deal_kernel.domain.messages import PROPOSAL_EMAIL
from deal_kernel.domain.ports import (
    Attachment,
    BlobStore,
    DeliveryGateway,
    DocumentRenderer,
    InquiryInfo,
    InquiryStatus,
    InquiryStore,
    Notification,
    Notifier,
)
from deal_kernel.domain.settings import LifecycleSettings
from deal_kernel.exceptions import (
    ConflictingWriteError,
    DeliveryFailedError,
    DocumentNotFoundError,
    InquiryNotFoundError,
    InvalidTokenError,
    InvalidTransitionError,
    ProposalNotFoundError,
    ValidationFailedError,
)
from deal_kernel.logging_config import LogContext, get_logger
from deal_kernel.models.audit_event import AuditAction
from deal_kernel.models.proposal import Proposal
from deal_kernel.services.auditor_service import AuditorService
from deal_kernel.services.base import BaseService, run_non_critical
from deal_kernel.services.sequence_service import SequenceService
from deal_kernel.services.template_service import TemplateInfo, TemplateService

logger = get_logger("services.proposal")

_ENTITY = "Proposal"


@dataclass(frozen=True)
class ProposalInfo:
    """Immutable DTO for a proposal."""

    id: UUID
    proposal_number: str
    inquiry_id: UUID
    template_id: UUID | None
    was_template_suggested: bool
    requested_by: UUID
    status: ProposalStatus
    proposal_data: dict[str, Any]
    reviewed_by: UUID | None
    reviewed_at: datetime | None
    admin_notes: str | None
    rejection_reason: str | None
    sent_by: UUID | None
    sent_at: datetime | None
    email_status: EmailStatus | None
    email_sent_at: datetime | None
    email_error: str | None
    document_key: str | None
    client_response: ClientResponse | None
    client_response_at: datetime | None
    created_at: datetime | None

    @property
    def has_failed_delivery(self) -> bool:
        return self.email_status == EmailStatus.FAILED


def _to_dto(p: Proposal) -> ProposalInfo:
    return ProposalInfo(
        id=p.id,
        proposal_number=p.proposal_number,
        inquiry_id=p.inquiry_id,
        template_id=p.template_id,
        was_template_suggested=p.was_template_suggested,
        requested_by=p.requested_by,
        status=ProposalStatus(p.status),
        proposal_data=dict(p.proposal_data or {}),
        reviewed_by=p.reviewed_by,
        reviewed_at=p.reviewed_at,
        admin_notes=p.admin_notes,
        rejection_reason=p.rejection_reason,
        sent_by=p.sent_by,
        sent_at=p.sent_at,
        email_status=EmailStatus(p.email_status) if p.email_status else None,
        email_sent_at=p.email_sent_at,
        email_error=p.email_error,
        document_key=p.document_key,
        client_response=ClientResponse(p.client_response) if p.client_response else None,
        client_response_at=p.client_response_at,
        created_at=p.created_at,
    )


@dataclass(frozen=True)
class _Outbound:
    """Everything delivery needs, captured before the guard transaction ends."""

    proposal_id: UUID
    proposal_number: str
    requested_by: UUID
    proposal_data: dict[str, Any]
    inquiry: InquiryInfo
    template: TemplateInfo | None
    document_key: str | None
    created_on: date


class ProposalService(BaseService):
    """
    Proposal lifecycle.

    Usage:
        service = ProposalService(session, inquiries, templates, renderer,
                                  gateway, blobs, settings=settings)
        info = service.create(actor, inquiry_id, {"services": [...], ...})
    """

    def __init__(
        self,
        session: Session,
        inquiries: InquiryStore,
        templates: TemplateService,
        renderer: DocumentRenderer,
        gateway: DeliveryGateway,
        blobs: BlobStore,
        notifier: Notifier | None = None,
        settings: LifecycleSettings | None = None,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        super().__init__(session, clock, auditor)
        self._inquiries = inquiries
        self._templates = templates
        self._renderer = renderer
        self._gateway = gateway
        self._blobs = blobs
        self._notifier = notifier
        self._settings = settings or LifecycleSettings()
        self._sequences = SequenceService(session)

    # =========================================================================
    # Creation and revision
    # =========================================================================

    def create(
        self,
        actor: Actor,
        inquiry_id: UUID,
        proposal_data: Mapping[str, Any],
        template_id: UUID | None = None,
    ) -> ProposalInfo:
        """
        Draft a proposal for an inquiry.

        Without ``template_id`` the template is suggested from the inquiry's
        service category (default template as fallback) and
        ``was_template_suggested`` is recorded.
        """
        require(
            check_proposal_access(actor, actor.actor_id, Operation.PROPOSAL_CREATE),
            actor,
            Operation.PROPOSAL_CREATE,
        )
        payload = _validated_payload(proposal_data)
        inquiry = self._require_inquiry(inquiry_id)

        with self._transaction():
            if template_id is not None:
                template = self._active_template(template_id)
                suggested = False
            else:
                template = self._templates.suggest_for_category(inquiry.service_category)
                suggested = True

            number = self._sequences.next_document_number(
                SequenceService.PROPOSAL,
                self._settings.proposal_number_prefix,
                self._clock.today(),
            )
            now = self._clock.now()
            proposal = Proposal(
                proposal_number=number,
                inquiry_id=inquiry.id,
                template_id=template.id,
                was_template_suggested=suggested,
                requested_by=actor.actor_id,
                status=ProposalStatus.PENDING.value,
                proposal_data=payload,
                created_at=now,
                updated_at=now,
            )
            self.session.add(proposal)
            self.session.flush()

            self._auditor.record_transition(
                _ENTITY,
                proposal.id,
                AuditAction.PROPOSAL_CREATED,
                actor.actor_id,
                None,
                ProposalStatus.PENDING.value,
                proposal_number=number,
                template_id=str(template.id),
                was_template_suggested=suggested,
            )
            info = _to_dto(proposal)

        logger.info(
            "proposal_created",
            extra={
                "proposal_id": str(info.id),
                "proposal_number": number,
                "inquiry_id": str(inquiry.id),
                "template_id": str(template.id),
                "was_template_suggested": suggested,
            },
        )
        return info

    def update(
        self,
        actor: Actor,
        proposal_id: UUID,
        proposal_data: Mapping[str, Any] | None = None,
        template_id: UUID | None = None,
    ) -> ProposalInfo:
        """
        Edit a pending or rejected proposal.

        Updating a rejected proposal revises it: status returns to pending
        and the reviewer, review time and rejection reason are cleared.
        """
        payload = _validated_payload(proposal_data) if proposal_data is not None else None

        with self._transaction():
            proposal = self._get(proposal_id)
            require(
                check_proposal_access(actor, proposal.requested_by, Operation.PROPOSAL_UPDATE),
                actor,
                Operation.PROPOSAL_UPDATE,
            )
            self._guard_in(proposal, "update", PROPOSAL_EDITABLE)

            previous = ProposalStatus(proposal.status)
            if payload is not None:
                proposal.proposal_data = payload
            if template_id is not None:
                proposal.template_id = self._active_template(template_id).id
                proposal.was_template_suggested = False

            revised = previous == ProposalStatus.REJECTED
            if revised:
                proposal.status = ProposalStatus.PENDING.value
                proposal.reviewed_by = None
                proposal.reviewed_at = None
                proposal.rejection_reason = None
            proposal.updated_at = self._clock.now()
            self.session.flush()

            self._auditor.record_transition(
                _ENTITY,
                proposal.id,
                AuditAction.PROPOSAL_REVISED if revised else AuditAction.PROPOSAL_UPDATED,
                actor.actor_id,
                previous.value,
                proposal.status,
                data_changed=payload is not None,
                template_changed=template_id is not None,
            )
            info = _to_dto(proposal)

        logger.info(
            "proposal_revised" if revised else "proposal_updated",
            extra={"proposal_id": str(proposal_id), "from_status": previous.value},
        )
        return info

    # =========================================================================
    # Review
    # =========================================================================

    def approve(
        self, actor: Actor, proposal_id: UUID, admin_notes: str | None = None
    ) -> ProposalInfo:
        with self._transaction():
            proposal = self._get(proposal_id)
            require(
                check_proposal_access(actor, proposal.requested_by, Operation.PROPOSAL_APPROVE),
                actor,
                Operation.PROPOSAL_APPROVE,
            )
            self._guard_transition(proposal, "approve", ProposalStatus.APPROVED)

            now = self._clock.now()
            proposal.status = ProposalStatus.APPROVED.value
            proposal.reviewed_by = actor.actor_id
            proposal.reviewed_at = now
            proposal.admin_notes = admin_notes
            proposal.updated_at = now
            self.session.flush()

            self._auditor.record_transition(
                _ENTITY,
                proposal.id,
                AuditAction.PROPOSAL_APPROVED,
                actor.actor_id,
                ProposalStatus.PENDING.value,
                ProposalStatus.APPROVED.value,
            )
            info = _to_dto(proposal)

        logger.info("proposal_approved", extra={"proposal_id": str(proposal_id)})
        self._notify(
            "proposal_approved",
            info.requested_by,
            proposal_id=str(info.id),
            proposal_number=info.proposal_number,
        )
        return info

    def reject(self, actor: Actor, proposal_id: UUID, reason: str | None) -> ProposalInfo:
        reason = (reason or "").strip()

        with self._transaction():
            proposal = self._get(proposal_id)
            require(
                check_proposal_access(actor, proposal.requested_by, Operation.PROPOSAL_REJECT),
                actor,
                Operation.PROPOSAL_REJECT,
            )
            if not reason:
                raise ValidationFailedError("rejection_reason", "is required to reject a proposal")
            self._guard_transition(proposal, "reject", ProposalStatus.REJECTED)

            now = self._clock.now()
            proposal.status = ProposalStatus.REJECTED.value
            proposal.reviewed_by = actor.actor_id
            proposal.reviewed_at = now
            proposal.rejection_reason = reason
            proposal.updated_at = now
            self.session.flush()

            self._auditor.record_transition(
                _ENTITY,
                proposal.id,
                AuditAction.PROPOSAL_REJECTED,
                actor.actor_id,
                ProposalStatus.PENDING.value,
                ProposalStatus.REJECTED.value,
                reason=reason,
            )
            info = _to_dto(proposal)

        logger.info("proposal_rejected", extra={"proposal_id": str(proposal_id)})
        self._notify(
            "proposal_rejected",
            info.requested_by,
            proposal_id=str(info.id),
            proposal_number=info.proposal_number,
            reason=reason,
        )
        return info

    def cancel(self, actor: Actor, proposal_id: UUID) -> ProposalInfo:
        with self._transaction():
            proposal = self._get(proposal_id)
            require(
                check_proposal_access(actor, proposal.requested_by, Operation.PROPOSAL_CANCEL),
                actor,
                Operation.PROPOSAL_CANCEL,
            )
            self._guard_in(proposal, "cancel", frozenset({ProposalStatus.PENDING}))

            proposal.status = ProposalStatus.CANCELLED.value
            proposal.updated_at = self._clock.now()
            self.session.flush()

            self._auditor.record_transition(
                _ENTITY,
                proposal.id,
                AuditAction.PROPOSAL_CANCELLED,
                actor.actor_id,
                ProposalStatus.PENDING.value,
                ProposalStatus.CANCELLED.value,
            )
            info = _to_dto(proposal)

        logger.info("proposal_cancelled", extra={"proposal_id": str(proposal_id)})
        return info

    # =========================================================================
    # Delivery
    # =========================================================================

    def send(self, actor: Actor, proposal_id: UUID) -> ProposalInfo:
        """
        Render, store and email an approved proposal, then mark it sent.

        Raises:
            RenderFailedError: document generation failed; nothing changed.
            DeliveryFailedError: email failed; email_status=failed and the
                stored document reference were committed first.
            ConflictingWriteError: another sender won the approved -> sent race.
        """
        with LogContext.bind(
            actor_id=str(actor.actor_id),
            entity_id=str(proposal_id),
            operation=Operation.PROPOSAL_SEND.value,
        ):
            with self._transaction():
                proposal = self._get(proposal_id)
                require(
                    check_proposal_access(actor, proposal.requested_by, Operation.PROPOSAL_SEND),
                    actor,
                    Operation.PROPOSAL_SEND,
                )
                self._guard_transition(proposal, "send", ProposalStatus.SENT)
                outbound = self._outbound(proposal, with_template=True)

            today = self._clock.today()
            document = build_proposal_document(
                outbound.proposal_data,
                outbound.inquiry,
                today,
                logo_url=self._settings.company_logo_url,
                created_on=outbound.created_on,
                default_validity_days=self._settings.default_validity_days,
            )
            html = self._renderer.render(outbound.template.html_body, document)
            pdf = self._renderer.to_pdf(html)
            key = self._blobs.put(
                document_key(
                    "proposals",
                    today,
                    f"proposal-{outbound.proposal_id}-{int(self._clock.now().timestamp())}.pdf",
                ),
                pdf,
                "application/pdf",
            )

            token = secrets.token_hex(32)
            result = self._deliver(outbound, pdf, token, document["validUntilDate"])

            if not result.success:
                self._record_send_failure(outbound, key, result.error, actor)
                raise DeliveryFailedError(outbound.inquiry.email, result.error)

            with self._transaction():
                now = self._clock.now()
                claimed = self.session.execute(
                    update(Proposal)
                    .where(
                        Proposal.id == outbound.proposal_id,
                        Proposal.status == ProposalStatus.APPROVED.value,
                    )
                    .values(
                        status=ProposalStatus.SENT.value,
                        sent_by=actor.actor_id,
                        sent_at=now,
                        email_status=EmailStatus.SENT.value,
                        email_sent_at=now,
                        email_error=None,
                        email_message_id=result.message_id,
                        document_key=key,
                        response_token=token,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount

                if claimed != 1:
                    logger.warning(
                        "proposal_send_conflict",
                        extra={"proposal_id": str(outbound.proposal_id)},
                    )
                    raise ConflictingWriteError(
                        _ENTITY,
                        outbound.proposal_id,
                        "Proposal is no longer approved or has already been sent",
                    )

                self._auditor.record_transition(
                    _ENTITY,
                    outbound.proposal_id,
                    AuditAction.PROPOSAL_SENT,
                    actor.actor_id,
                    ProposalStatus.APPROVED.value,
                    ProposalStatus.SENT.value,
                    recipient=outbound.inquiry.email,
                    message_id=result.message_id,
                    document_key=key,
                )
                info = _to_dto(self._reload(outbound.proposal_id))

            logger.info(
                "proposal_sent",
                extra={
                    "proposal_id": str(info.id),
                    "proposal_number": info.proposal_number,
                    "message_id": result.message_id,
                },
            )
            run_non_critical(
                "inquiry_status_advance",
                self._inquiries.update_status,
                outbound.inquiry.id,
                InquiryStatus.SUBMITTED_PROPOSAL,
            )
            self._notify(
                "proposal_sent",
                info.requested_by,
                proposal_id=str(info.id),
                proposal_number=info.proposal_number,
            )
            return info

    def retry_email(self, actor: Actor, proposal_id: UUID) -> ProposalInfo:
        """
        Re-deliver the stored document of a failed send.

        Nothing is re-rendered.  On success email_status becomes sent; the
        business status is left as it is.
        """
        with self._transaction():
            proposal = self._get(proposal_id)
            require(
                check_proposal_access(actor, proposal.requested_by, Operation.PROPOSAL_RETRY_EMAIL),
                actor,
                Operation.PROPOSAL_RETRY_EMAIL,
            )
            if proposal.email_status != EmailStatus.FAILED.value:
                raise InvalidTransitionError(
                    _ENTITY,
                    proposal.id,
                    "retry email for",
                    proposal.email_status,
                    (EmailStatus.FAILED,),
                    message="Email can only be retried after a failed delivery",
                )
            self._guard_in(proposal, "retry email for", PROPOSAL_RETRYABLE)
            if not proposal.document_key:
                raise DocumentNotFoundError(_ENTITY, proposal.id)
            outbound = self._outbound(proposal, with_template=False)

        pdf = self._load_document(outbound)
        issued_on = self._clock.today()
        valid_until = build_proposal_document(
            outbound.proposal_data,
            outbound.inquiry,
            issued_on,
            logo_url=self._settings.company_logo_url,
            created_on=outbound.created_on,
            default_validity_days=self._settings.default_validity_days,
        )["validUntilDate"]
        token = secrets.token_hex(32)
        result = self._deliver(outbound, pdf, token, valid_until)

        if not result.success:
            with self._transaction():
                self.session.execute(
                    update(Proposal)
                    .where(Proposal.id == outbound.proposal_id)
                    .values(email_error=result.error, updated_at=self._clock.now())
                    .execution_options(synchronize_session=False)
                )
            logger.warning(
                "proposal_email_retry_failed",
                extra={"proposal_id": str(proposal_id), "error": result.error},
            )
            raise DeliveryFailedError(outbound.inquiry.email, result.error)

        with self._transaction():
            now = self._clock.now()
            updated = self.session.execute(
                update(Proposal)
                .where(
                    Proposal.id == outbound.proposal_id,
                    Proposal.email_status == EmailStatus.FAILED.value,
                )
                .values(
                    email_status=EmailStatus.SENT.value,
                    email_sent_at=now,
                    email_error=None,
                    email_message_id=result.message_id,
                    response_token=token,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if updated != 1:
                raise ConflictingWriteError(
                    _ENTITY,
                    outbound.proposal_id,
                    "Proposal email was already retried",
                )
            self._auditor.record(
                _ENTITY,
                outbound.proposal_id,
                AuditAction.PROPOSAL_EMAIL_RETRIED,
                actor.actor_id,
                {"recipient": outbound.inquiry.email, "message_id": result.message_id},
            )
            info = _to_dto(self._reload(outbound.proposal_id))

        logger.info(
            "proposal_email_retried",
            extra={"proposal_id": str(proposal_id), "message_id": result.message_id},
        )
        return info

    # =========================================================================
    # Prospect response
    # =========================================================================

    def record_client_response(
        self,
        proposal_id: UUID,
        token: str,
        accepted: bool,
        ip_address: str | None = None,
    ) -> ProposalInfo:
        """
        Record the prospect's accept/decline from the emailed links.

        Token-authenticated; the answer is a timestamped terminal annotation
        on a sent proposal, not a status change.
        """
        response = ClientResponse.ACCEPTED if accepted else ClientResponse.DECLINED

        with self._transaction():
            proposal = self._get(proposal_id)
            if not proposal.response_token or not hmac.compare_digest(
                proposal.response_token.encode(), (token or "").encode()
            ):
                raise InvalidTokenError("respond to proposal")
            self._guard_in(proposal, "respond to", frozenset({ProposalStatus.SENT}))

            now = self._clock.now()
            updated = self.session.execute(
                update(Proposal)
                .where(
                    Proposal.id == proposal.id,
                    Proposal.client_response.is_(None),
                )
                .values(
                    client_response=response.value,
                    client_response_at=now,
                    client_response_ip=ip_address,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if updated != 1:
                raise InvalidTransitionError(
                    _ENTITY,
                    proposal.id,
                    "respond to",
                    proposal.status,
                    message="This proposal has already been answered",
                )

            self._auditor.record(
                _ENTITY,
                proposal.id,
                AuditAction.PROPOSAL_CLIENT_RESPONDED,
                None,
                {"response": response.value},
                ip_address=ip_address,
            )
            info = _to_dto(self._reload(proposal.id))

        logger.info(
            "proposal_client_responded",
            extra={"proposal_id": str(proposal_id), "response": response.value},
        )
        self._notify(
            f"proposal_{response.value}",
            info.requested_by,
            proposal_id=str(info.id),
            proposal_number=info.proposal_number,
        )
        return info

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, actor: Actor, proposal_id: UUID) -> ProposalInfo:
        info = self.find(actor, proposal_id)
        if info is None:
            raise ProposalNotFoundError(str(proposal_id))
        return info

    def find(self, actor: Actor, proposal_id: UUID) -> ProposalInfo | None:
        with self._transaction():
            proposal = self.session.get(Proposal, proposal_id, populate_existing=True)
            if proposal is None:
                return None
            require(
                check_proposal_access(actor, proposal.requested_by, Operation.PROPOSAL_VIEW),
                actor,
                Operation.PROPOSAL_VIEW,
            )
            return _to_dto(proposal)

    def list_for_actor(
        self,
        actor: Actor,
        status: ProposalStatus | None = None,
        inquiry_id: UUID | None = None,
    ) -> list[ProposalInfo]:
        """Proposals visible to ``actor``; sales see only their own unless master."""
        query = select(Proposal)
        if not (actor.is_admin or actor.is_master_sales):
            query = query.where(Proposal.requested_by == actor.actor_id)
        if status is not None:
            query = query.where(Proposal.status == status.value)
        if inquiry_id is not None:
            query = query.where(Proposal.inquiry_id == inquiry_id)

        with self._transaction():
            rows = self.session.execute(
                query.order_by(Proposal.created_at.desc()).execution_options(
                    populate_existing=True
                )
            ).scalars().all()
            return [_to_dto(p) for p in rows]

    def get_document(self, actor: Actor, proposal_id: UUID) -> bytes:
        """Stored PDF of the last rendered proposal."""
        info = self.get(actor, proposal_id)
        if not info.document_key:
            raise DocumentNotFoundError(_ENTITY, info.id)
        try:
            return self._blobs.get(info.document_key)
        except (KeyError, FileNotFoundError):
            raise DocumentNotFoundError(_ENTITY, info.id, info.document_key) from None

    # =========================================================================
    # Internal
    # =========================================================================

    def _get(self, proposal_id: UUID) -> Proposal:
        proposal = self.session.get(Proposal, proposal_id, populate_existing=True)
        if proposal is None:
            raise ProposalNotFoundError(str(proposal_id))
        return proposal

    def _reload(self, proposal_id: UUID) -> Proposal:
        return self.session.execute(
            select(Proposal)
            .where(Proposal.id == proposal_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _require_inquiry(self, inquiry_id: UUID) -> InquiryInfo:
        inquiry = self._inquiries.get_by_id(inquiry_id)
        if inquiry is None:
            raise InquiryNotFoundError(str(inquiry_id))
        return inquiry

    def _active_template(self, template_id: UUID) -> TemplateInfo:
        template = self._templates.get_by_id(template_id)
        if template.kind != TemplateKind.PROPOSAL:
            raise ValidationFailedError("template_id", "not a proposal template")
        if not template.is_active:
            raise ValidationFailedError("template_id", "template is inactive")
        return template

    def _guard_transition(
        self, proposal: Proposal, action: str, target: ProposalStatus
    ) -> None:
        self._guard_in(proposal, action, proposal_sources(target))

    def _guard_in(
        self, proposal: Proposal, action: str, allowed: frozenset[ProposalStatus]
    ) -> None:
        if ProposalStatus(proposal.status) not in allowed:
            raise InvalidTransitionError(
                _ENTITY, proposal.id, action, proposal.status, allowed
            )

    def _outbound(self, proposal: Proposal, with_template: bool) -> _Outbound:
        inquiry = self._require_inquiry(proposal.inquiry_id)
        if not inquiry.email:
            raise ValidationFailedError("client_email", "the inquiry has no email address")
        template = None
        if with_template:
            if proposal.template_id is not None:
                template = self._templates.get_by_id(proposal.template_id)
            else:
                template = self._templates.suggest_for_category(inquiry.service_category)
        return _Outbound(
            proposal_id=proposal.id,
            proposal_number=proposal.proposal_number,
            requested_by=proposal.requested_by,
            proposal_data=dict(proposal.proposal_data or {}),
            inquiry=inquiry,
            template=template,
            document_key=proposal.document_key,
            created_on=proposal.created_at.date() if proposal.created_at else self._clock.today(),
        )

    def _deliver(self, outbound: _Outbound, pdf: bytes, token: str, valid_until: str):
        settings = self._settings
        body = self._renderer.render(
            PROPOSAL_EMAIL,
            {
                "clientName": outbound.inquiry.name or "Valued Client",
                "companyName": settings.company_name,
                "proposalNumber": outbound.proposal_number,
                "validUntilDate": valid_until,
                "acceptUrl": settings.proposal_response_url(outbound.proposal_id, token, "accept"),
                "declineUrl": settings.proposal_response_url(outbound.proposal_id, token, "decline"),
            },
        )
        return self._gateway.send(
            outbound.inquiry.email,
            settings.proposal_subject,
            body,
            Attachment(settings.proposal_attachment_name, pdf),
        )

    def _record_send_failure(
        self, outbound: _Outbound, key: str, error: str | None, actor: Actor
    ) -> None:
        with self._transaction():
            self.session.execute(
                update(Proposal)
                .where(
                    Proposal.id == outbound.proposal_id,
                    Proposal.status == ProposalStatus.APPROVED.value,
                )
                .values(
                    email_status=EmailStatus.FAILED.value,
                    email_error=error,
                    document_key=key,
                    updated_at=self._clock.now(),
                )
                .execution_options(synchronize_session=False)
            )
            self._auditor.record(
                _ENTITY,
                outbound.proposal_id,
                AuditAction.PROPOSAL_SEND_FAILED,
                actor.actor_id,
                {"recipient": outbound.inquiry.email, "error": error, "document_key": key},
            )
        logger.warning(
            "proposal_send_failed",
            extra={
                "proposal_id": str(outbound.proposal_id),
                "recipient": outbound.inquiry.email,
                "error": error,
            },
        )

    def _load_document(self, outbound: _Outbound) -> bytes:
        try:
            return self._blobs.get(outbound.document_key)
        except (KeyError, FileNotFoundError):
            raise DocumentNotFoundError(
                _ENTITY, outbound.proposal_id, outbound.document_key
            ) from None

    def _notify(self, event: str, recipient_id: UUID | None, **payload: Any) -> None:
        if self._notifier is None:
            return
        run_non_critical(
            event, self._notifier.notify, Notification(event, recipient_id, payload)
        )


def _validated_payload(proposal_data: Mapping[str, Any] | None) -> dict[str, Any]:
    if not isinstance(proposal_data, Mapping):
        raise ValidationFailedError("proposal_data", "must be a mapping")
    check_proposal_shape(proposal_data)
    return dict(proposal_data)
