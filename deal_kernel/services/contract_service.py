"""
ContractService -- the contract fulfilment and signing state machine.

Responsibility:
    Drives the contract derived from a sent proposal along its linear
    lifecycle:

        pending_request --request--> requested --fulfil--> sent_to_sales
            (fulfil may repeat while sent_to_sales)            |
        hardbound_received <--hardbound-- signed <--sign-- sent_to_client

    Fulfilment is either an uploaded finished document or a document
    generated from a template (optionally from admin-edited HTML).  Delivery
    to the counterparty carries a tokenized signing link; signing provisions
    the durable Client record.

Architecture position:
    Kernel > Services -- imperative shell.  Owns the transaction of every
    operation.  Rendering, storage and email run outside any database
    transaction; the write that follows re-checks the status guard with a
    conditional UPDATE.

Invariants enforced:
    - Status only moves forward along CONTRACT_TRANSITIONS; the only
      repeatable move is sent_to_sales -> sent_to_sales (re-fulfilment).
    - submission_token is generated when, and only when, the contract is
      sent to the client.  Tokens are compared in constant time.
    - signed_at is written once: ``UPDATE ... WHERE status='sent_to_client'``
      claims the signing.  A concurrent second submission gets
      AlreadySignedError.
    - Client provisioning and the signed transition commit together; if
      the client cannot be provisioned the contract stays sent_to_client.

Failure modes:
    - ContractNotFoundError / ProposalNotFoundError.
    - InvalidTransitionError (AlreadySignedError for a repeated signing).
    - ForbiddenError / InvalidTokenError.
    - ValidationFailedError for bad contract details or a missing template.
    - RenderFailedError, DeliveryFailedError (no state change).
    - DocumentNotFoundError when a stored document is missing.
"""

from __future__ import annotations

import hmac
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deal_kernel.domain.authorization import (
    Actor,
    Operation,
    check_contract_access,
    require,
)
from deal_kernel.domain.clock import Clock
from deal_kernel.domain.documents import (
    ContractDetails,
    build_contract_document,
    document_key,
    sniff_document_type,
)
from deal_kernel.domain.lifecycle import (
    CONTRACT_FULFILLABLE,
    ClientResponse,
    ContractStatus,
    ProposalStatus,
    contract_sources,
)
from deal_kernel.domain.messages import CONTRACT_EMAIL
from deal_kernel.domain.ports import (
    Attachment,
    BlobStore,
    DeliveryGateway,
    DocumentRenderer,
    InquiryStore,
    Notification,
    Notifier,
)
from deal_kernel.domain.settings import LifecycleSettings
from deal_kernel.exceptions import (
    AlreadySignedError,
    ConflictingWriteError,
    ContractNotFoundError,
    DeliveryFailedError,
    DocumentNotFoundError,
    InvalidTokenError,
    InvalidTransitionError,
    NoTemplatesConfiguredError,
    ProposalNotFoundError,
    ValidationFailedError,
)
from deal_kernel.logging_config import LogContext, get_logger
from deal_kernel.models.audit_event import AuditAction
from deal_kernel.models.client import normalize_email
from deal_kernel.models.contract import Contract
from deal_kernel.models.proposal import Proposal
from deal_kernel.services.auditor_service import AuditorService
from deal_kernel.services.base import BaseService, run_non_critical
from deal_kernel.services.client_service import ClientProfile, ClientService
from deal_kernel.services.template_service import TemplateService

logger = get_logger("services.contract")

_ENTITY = "Contract"


@dataclass(frozen=True)
class ContractInfo:
    """Immutable DTO for a contract."""

    id: UUID
    proposal_id: UUID
    status: ContractStatus
    template_id: UUID | None
    requested_by: UUID
    requested_at: datetime | None
    request_notes: str | None
    custom_template_key: str | None
    details: ContractDetails | None
    contract_duration: str | None
    document_key: str | None
    has_draft_html: bool
    admin_notes: str | None
    fulfilled_by: UUID | None
    fulfilled_at: datetime | None
    sent_to_client_by: UUID | None
    sent_to_client_at: datetime | None
    recipient_email: str | None
    signed_document_key: str | None
    signed_at: datetime | None
    signed_by_ip: str | None
    client_id: UUID | None
    hardbound_document_key: str | None
    hardbound_at: datetime | None
    created_at: datetime | None


def _to_dto(c: Contract) -> ContractInfo:
    return ContractInfo(
        id=c.id,
        proposal_id=c.proposal_id,
        status=ContractStatus(c.status),
        template_id=c.template_id,
        requested_by=c.requested_by,
        requested_at=c.requested_at,
        request_notes=c.request_notes,
        custom_template_key=c.custom_template_key,
        details=ContractDetails.from_mapping(c.contract_details) if c.contract_details else None,
        contract_duration=c.contract_duration,
        document_key=c.document_key,
        has_draft_html=bool(c.edited_html),
        admin_notes=c.admin_notes,
        fulfilled_by=c.fulfilled_by,
        fulfilled_at=c.fulfilled_at,
        sent_to_client_by=c.sent_to_client_by,
        sent_to_client_at=c.sent_to_client_at,
        recipient_email=c.recipient_email,
        signed_document_key=c.signed_document_key,
        signed_at=c.signed_at,
        signed_by_ip=c.signed_by_ip,
        client_id=c.client_id,
        hardbound_document_key=c.hardbound_document_key,
        hardbound_at=c.hardbound_at,
        created_at=c.created_at,
    )


def _coerce_details(details: ContractDetails | Mapping[str, Any]) -> ContractDetails:
    if isinstance(details, ContractDetails):
        return details
    if isinstance(details, Mapping):
        return ContractDetails.from_mapping(details)
    raise ValidationFailedError("contract_details", "must be a mapping")


def _detail_columns(details: ContractDetails) -> dict[str, Any]:
    """Stored JSON plus the denormalized display columns."""
    return {
        "contract_details": details.to_json(),
        "contract_type": details.contract_type,
        "client_name": details.client_name,
        "company_name": details.company_name,
        "client_email": details.client_email,
        "contract_start_date": details.contract_start_date,
        "contract_end_date": details.contract_end_date,
        "contract_duration": details.duration,
    }


class ContractService(BaseService):
    """
    Contract lifecycle.

    Usage:
        service = ContractService(session, inquiries, templates, renderer,
                                  gateway, blobs, settings=settings)
        contract = service.materialize(proposal_id)
        contract = service.request(actor, contract.id, {...})
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
        self._clients = ClientService(session)

    # =========================================================================
    # Creation and request
    # =========================================================================

    def materialize(self, proposal_id: UUID) -> ContractInfo:
        """
        Return the contract of a sent proposal, creating it on first use.

        Idempotent.  The unique proposal_id column settles concurrent first
        calls; the loser re-reads the winner's row.
        """
        with self._transaction():
            existing = self._by_proposal(proposal_id)
            if existing is not None:
                return _to_dto(existing)

            proposal = self.session.get(Proposal, proposal_id, populate_existing=True)
            if proposal is None:
                raise ProposalNotFoundError(str(proposal_id))
            if proposal.status != ProposalStatus.SENT.value:
                raise InvalidTransitionError(
                    "Proposal",
                    proposal.id,
                    "create a contract for",
                    proposal.status,
                    (ProposalStatus.SENT,),
                )
            if proposal.client_response == ClientResponse.DECLINED.value:
                raise InvalidTransitionError(
                    "Proposal",
                    proposal.id,
                    "create a contract for",
                    proposal.status,
                    message="The client declined this proposal",
                )

            savepoint = self.session.begin_nested()
            try:
                contract = Contract(
                    proposal_id=proposal.id,
                    status=ContractStatus.PENDING_REQUEST.value,
                    requested_by=proposal.requested_by,
                    created_at=self._clock.now(),
                    updated_at=self._clock.now(),
                )
                self.session.add(contract)
                self.session.flush()
                savepoint.commit()
            except IntegrityError:
                logger.debug(
                    "contract_materialize_race_retry",
                    extra={"proposal_id": str(proposal_id)},
                )
                savepoint.rollback()
                winner = self._by_proposal(proposal_id)
                if winner is None:
                    raise
                return _to_dto(winner)

            self._auditor.record_transition(
                _ENTITY,
                contract.id,
                AuditAction.CONTRACT_MATERIALIZED,
                None,
                None,
                ContractStatus.PENDING_REQUEST.value,
                proposal_id=str(proposal.id),
            )
            info = _to_dto(contract)

        logger.info(
            "contract_materialized",
            extra={"contract_id": str(info.id), "proposal_id": str(proposal_id)},
        )
        return info

    def request(
        self,
        actor: Actor,
        contract_id: UUID,
        details: ContractDetails | Mapping[str, Any],
        request_notes: str | None = None,
        custom_template: bytes | None = None,
    ) -> ContractInfo:
        """
        Request a contract with the requester's details.

        ``custom_template`` is stored verbatim and takes the place of a
        system template.  Otherwise the template is resolved by contract
        type with the default as fallback; having no contract templates at
        all does not fail the request since the admin can upload instead.
        """
        details = _coerce_details(details)

        with self._transaction():
            contract = self._get(contract_id)
            require(
                check_contract_access(actor, contract.requested_by, Operation.CONTRACT_REQUEST),
                actor,
                Operation.CONTRACT_REQUEST,
            )
            self._guard_transition(contract, "request", ContractStatus.REQUESTED)

        custom_key = None
        template_id = None
        if custom_template:
            ext, content_type = sniff_document_type(custom_template)
            custom_key = self._blobs.put(
                self._key("contract-templates", f"contract-template-{contract_id}", ext),
                custom_template,
                content_type,
            )
        else:
            with self._transaction():
                try:
                    template_id = self._templates.suggest_for_contract_type(
                        details.contract_type
                    ).id
                except NoTemplatesConfiguredError:
                    logger.warning(
                        "contract_template_unresolved",
                        extra={
                            "contract_id": str(contract_id),
                            "contract_type": details.contract_type,
                        },
                    )

        with self._transaction():
            now = self._clock.now()
            self._claim(
                contract_id,
                frozenset({ContractStatus.PENDING_REQUEST}),
                status=ContractStatus.REQUESTED.value,
                requested_at=now,
                request_notes=request_notes,
                template_id=template_id,
                custom_template_key=custom_key,
                updated_at=now,
                **_detail_columns(details),
            )
            self._auditor.record_transition(
                _ENTITY,
                contract_id,
                AuditAction.CONTRACT_REQUESTED,
                actor.actor_id,
                ContractStatus.PENDING_REQUEST.value,
                ContractStatus.REQUESTED.value,
                contract_type=details.contract_type,
                template_id=str(template_id) if template_id else None,
                custom_template=custom_key is not None,
            )
            info = _to_dto(self._reload(contract_id))

        logger.info(
            "contract_requested",
            extra={
                "contract_id": str(contract_id),
                "contract_type": details.contract_type,
                "custom_template": custom_key is not None,
            },
        )
        self._notify_admins("contract_requested", info)
        return info

    # =========================================================================
    # Admin fulfilment
    # =========================================================================

    def upload_document(
        self,
        actor: Actor,
        contract_id: UUID,
        document: bytes,
        admin_notes: str | None = None,
        details: ContractDetails | Mapping[str, Any] | None = None,
    ) -> ContractInfo:
        """Fulfil with a finished document prepared outside the system."""
        if not document:
            raise ValidationFailedError("document", "must not be empty")
        edited = _coerce_details(details) if details is not None else None

        with self._transaction():
            contract = self._get(contract_id)
            require(
                check_contract_access(actor, contract.requested_by, Operation.CONTRACT_FULFILL),
                actor,
                Operation.CONTRACT_FULFILL,
            )
            self._guard_in(contract, "fulfil", CONTRACT_FULFILLABLE)

        ext, content_type = sniff_document_type(document)
        key = self._blobs.put(
            self._key("contracts", f"contract-{contract_id}", ext), document, content_type
        )
        return self._record_fulfilment(actor, contract_id, key, admin_notes, edited, "upload")

    def generate_from_template(
        self,
        actor: Actor,
        contract_id: UUID,
        details: ContractDetails | Mapping[str, Any] | None = None,
        admin_notes: str | None = None,
        edited_html: str | None = None,
    ) -> ContractInfo:
        """
        Fulfil with a PDF generated from the contract's template.

        The HTML used is, in order: ``edited_html``, the saved draft, or
        the template rendered with the (edited or stored) contract details.
        A supplied ``edited_html`` is first saved as the draft.
        """
        edited = _coerce_details(details) if details is not None else None
        if edited_html:
            self.save_draft_html(actor, contract_id, edited_html)

        with self._transaction():
            contract = self._get(contract_id)
            require(
                check_contract_access(actor, contract.requested_by, Operation.CONTRACT_FULFILL),
                actor,
                Operation.CONTRACT_FULFILL,
            )
            self._guard_in(contract, "fulfil", CONTRACT_FULFILLABLE)
            if contract.template_id is None:
                raise ValidationFailedError(
                    "template_id",
                    "contract has no template; upload a document instead",
                )
            html = contract.edited_html
            template_body, data = None, None
            if not html:
                template_body = self._templates.get_by_id(contract.template_id).html_body
                data = self._document_data(contract, edited)

        if not html:
            html = self._renderer.render(template_body, data)
        pdf = self._renderer.to_pdf(html)
        key = self._blobs.put(
            self._key("contracts", f"contract-{contract_id}", ".pdf"), pdf, "application/pdf"
        )
        return self._record_fulfilment(actor, contract_id, key, admin_notes, edited, "template")

    def save_draft_html(self, actor: Actor, contract_id: UUID, html: str) -> ContractInfo:
        """Persist an admin's edited HTML snapshot. Status is unchanged."""
        if not html or not html.strip():
            raise ValidationFailedError("edited_html", "must not be empty")

        with self._transaction():
            contract = self._get(contract_id)
            require(
                check_contract_access(actor, contract.requested_by, Operation.CONTRACT_SAVE_DRAFT),
                actor,
                Operation.CONTRACT_SAVE_DRAFT,
            )
            self._guard_in(contract, "edit", CONTRACT_FULFILLABLE)
            contract.edited_html = html
            contract.updated_at = self._clock.now()
            self.session.flush()
            self._auditor.record(
                _ENTITY,
                contract.id,
                AuditAction.CONTRACT_DRAFT_SAVED,
                actor.actor_id,
                {"length": len(html)},
            )
            info = _to_dto(contract)

        logger.info("contract_draft_saved", extra={"contract_id": str(contract_id)})
        return info

    def get_rendered_html(self, actor: Actor, contract_id: UUID) -> str:
        """HTML for the admin editor: the saved draft, else the rendered template."""
        with self._transaction():
            contract = self._get(contract_id)
            require(
                check_contract_access(actor, contract.requested_by, Operation.CONTRACT_SAVE_DRAFT),
                actor,
                Operation.CONTRACT_SAVE_DRAFT,
            )
            if contract.edited_html:
                return contract.edited_html
            if contract.template_id is None:
                raise ValidationFailedError("template_id", "contract has no template")
            template = self._templates.get_by_id(contract.template_id)
            data = self._document_data(contract, None)
        return self._renderer.render(template.html_body, data)

    # =========================================================================
    # Counterparty
    # =========================================================================

    def send_to_counterparty(
        self, actor: Actor, contract_id: UUID, recipient_email: str
    ) -> ContractInfo:
        """
        Email the fulfilled document with a tokenized signing link.

        A delivery failure raises DeliveryFailedError and changes nothing.
        """
        recipient = (recipient_email or "").strip()
        if not recipient:
            raise ValidationFailedError("recipient_email", "is required")

        with LogContext.bind(
            actor_id=str(actor.actor_id),
            entity_id=str(contract_id),
            operation=Operation.CONTRACT_SEND_TO_CLIENT.value,
        ):
            with self._transaction():
                contract = self._get(contract_id)
                require(
                    check_contract_access(
                        actor, contract.requested_by, Operation.CONTRACT_SEND_TO_CLIENT
                    ),
                    actor,
                    Operation.CONTRACT_SEND_TO_CLIENT,
                )
                self._guard_in(
                    contract, "send to client", frozenset({ContractStatus.SENT_TO_SALES})
                )
                if not contract.document_key:
                    raise DocumentNotFoundError(_ENTITY, contract.id)
                key = contract.document_key
                client_name = contract.client_name

            pdf = self._load(contract_id, key)
            token = secrets.token_hex(32)
            body = self._renderer.render(
                CONTRACT_EMAIL,
                {
                    "clientName": client_name or "Valued Client",
                    "companyName": self._settings.company_name,
                    "signingUrl": self._settings.contract_signing_url(contract_id, token),
                },
            )
            result = self._gateway.send(
                recipient,
                self._settings.contract_subject,
                body,
                Attachment(self._settings.contract_attachment_name, pdf),
            )
            if not result.success:
                logger.warning(
                    "contract_send_failed",
                    extra={
                        "contract_id": str(contract_id),
                        "recipient": recipient,
                        "error": result.error,
                    },
                )
                raise DeliveryFailedError(recipient, result.error)

            with self._transaction():
                now = self._clock.now()
                self._claim(
                    contract_id,
                    frozenset({ContractStatus.SENT_TO_SALES}),
                    status=ContractStatus.SENT_TO_CLIENT.value,
                    sent_to_client_by=actor.actor_id,
                    sent_to_client_at=now,
                    recipient_email=recipient,
                    submission_token=token,
                    updated_at=now,
                )
                self._auditor.record_transition(
                    _ENTITY,
                    contract_id,
                    AuditAction.CONTRACT_SENT_TO_CLIENT,
                    actor.actor_id,
                    ContractStatus.SENT_TO_SALES.value,
                    ContractStatus.SENT_TO_CLIENT.value,
                    recipient=recipient,
                    message_id=result.message_id,
                )
                info = _to_dto(self._reload(contract_id))

            logger.info(
                "contract_sent_to_client",
                extra={"contract_id": str(contract_id), "message_id": result.message_id},
            )
            return info

    def validate_token(self, contract_id: UUID, token: str) -> ContractInfo:
        """
        Check a counterparty's submission token.

        Raises:
            InvalidTransitionError: the contract has no token, or is not
                awaiting a signature.
            InvalidTokenError: the token does not match.
            AlreadySignedError: the contract was already signed.
        """
        with self._transaction():
            contract = self._get(contract_id)
            self._check_token(contract, token)
            return _to_dto(contract)

    def record_signing(
        self,
        contract_id: UUID,
        token: str,
        signed_document: bytes,
        ip_address: str | None = None,
    ) -> ContractInfo:
        """
        Accept the counterparty's signed document and provision the client.

        The signed transition and the client lookup/creation commit as one
        unit.  Losing a concurrent signing race raises AlreadySignedError.
        The document is stored before that unit; if the unit fails, the
        stored key is logged as ``signed_document_orphaned``.
        """
        if not signed_document:
            raise ValidationFailedError("signed_document", "must not be empty")

        with self._transaction():
            contract = self._get(contract_id)
            self._check_token(contract, token)
            proposal = self.session.get(Proposal, contract.proposal_id)
            inquiry = self._inquiries.get_by_id(proposal.inquiry_id) if proposal else None
            email = contract.client_email or (inquiry.email if inquiry else None) or contract.recipient_email
            profile = ClientProfile(
                company_name=contract.company_name or (inquiry.company if inquiry else None),
                contact_person=contract.client_name or (inquiry.name if inquiry else None),
                phone=inquiry.phone if inquiry else None,
                address=(contract.contract_details or {}).get("client_address"),
                contract_start_date=contract.contract_start_date,
                contract_end_date=contract.contract_end_date,
            )
            requested_by = contract.requested_by

        ext, content_type = sniff_document_type(signed_document)
        key = self._blobs.put(
            self._key("signed-contracts", f"signed-contract-{contract_id}", ext),
            signed_document,
            content_type,
        )

        try:
            with self._transaction():
                client, created = self._clients.get_or_create(normalize_email(email or ""), profile)
                now = self._clock.now()
                claimed = self.session.execute(
                    update(Contract)
                    .where(
                        Contract.id == contract_id,
                        Contract.status == ContractStatus.SENT_TO_CLIENT.value,
                    )
                    .values(
                        status=ContractStatus.SIGNED.value,
                        signed_document_key=key,
                        signed_at=now,
                        signed_by_ip=ip_address,
                        client_id=client.id,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed != 1:
                    raise AlreadySignedError(str(contract_id), self._current_status(contract_id))

                if created:
                    self._auditor.record(
                        "Client",
                        client.id,
                        AuditAction.CLIENT_PROVISIONED,
                        None,
                        {"email": client.email, "contract_id": str(contract_id)},
                        ip_address=ip_address,
                    )
                self._auditor.record_transition(
                    _ENTITY,
                    contract_id,
                    AuditAction.CONTRACT_SIGNED,
                    None,
                    ContractStatus.SENT_TO_CLIENT.value,
                    ContractStatus.SIGNED.value,
                    ip_address=ip_address,
                    client_id=str(client.id),
                    client_created=created,
                    signed_document_key=key,
                )
                info = _to_dto(self._reload(contract_id))
        except Exception:
            logger.warning(
                "signed_document_orphaned",
                extra={"contract_id": str(contract_id), "document_key": key},
            )
            raise

        logger.info(
            "contract_signed",
            extra={
                "contract_id": str(contract_id),
                "client_id": str(client.id),
                "client_created": created,
            },
        )
        if self._notifier is not None:
            run_non_critical(
                "contract_signed",
                self._notifier.notify,
                Notification(
                    "contract_signed",
                    requested_by,
                    {"contract_id": str(contract_id), "client_id": str(client.id)},
                ),
            )
        return info

    def record_hardbound(
        self, actor: Actor, contract_id: UUID, document: bytes
    ) -> ContractInfo:
        """Record receipt of the physical signed copy. Terminal."""
        if not document:
            raise ValidationFailedError("document", "must not be empty")

        with self._transaction():
            contract = self._get(contract_id)
            require(
                check_contract_access(actor, contract.requested_by, Operation.CONTRACT_HARDBOUND),
                actor,
                Operation.CONTRACT_HARDBOUND,
            )
            self._guard_transition(contract, "record hardbound copy for", ContractStatus.HARDBOUND_RECEIVED)

        ext, content_type = sniff_document_type(document)
        key = self._blobs.put(
            self._key("hardbound-contracts", f"hardbound-contract-{contract_id}", ext),
            document,
            content_type,
        )

        with self._transaction():
            now = self._clock.now()
            self._claim(
                contract_id,
                frozenset({ContractStatus.SIGNED}),
                status=ContractStatus.HARDBOUND_RECEIVED.value,
                hardbound_document_key=key,
                hardbound_by=actor.actor_id,
                hardbound_at=now,
                updated_at=now,
            )
            self._auditor.record_transition(
                _ENTITY,
                contract_id,
                AuditAction.CONTRACT_HARDBOUND_RECEIVED,
                actor.actor_id,
                ContractStatus.SIGNED.value,
                ContractStatus.HARDBOUND_RECEIVED.value,
                document_key=key,
            )
            info = _to_dto(self._reload(contract_id))

        logger.info("contract_hardbound_received", extra={"contract_id": str(contract_id)})
        return info

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, actor: Actor, contract_id: UUID) -> ContractInfo:
        with self._transaction():
            contract = self._get(contract_id)
            require(
                check_contract_access(actor, contract.requested_by, Operation.CONTRACT_VIEW),
                actor,
                Operation.CONTRACT_VIEW,
            )
            return _to_dto(contract)

    def get_by_proposal(self, actor: Actor, proposal_id: UUID) -> ContractInfo | None:
        with self._transaction():
            contract = self._by_proposal(proposal_id)
            if contract is None:
                return None
            require(
                check_contract_access(actor, contract.requested_by, Operation.CONTRACT_VIEW),
                actor,
                Operation.CONTRACT_VIEW,
            )
            return _to_dto(contract)

    def get_document(self, actor: Actor, contract_id: UUID, which: str = "contract") -> bytes:
        """
        Stored bytes of one of the contract's documents.

        ``which`` is one of ``contract``, ``custom_template``, ``signed`` or
        ``hardbound``.
        """
        columns = {
            "contract": "document_key",
            "custom_template": "custom_template_key",
            "signed": "signed_document_key",
            "hardbound": "hardbound_document_key",
        }
        if which not in columns:
            raise ValidationFailedError("which", f"unknown document: {which!r}")
        info = self.get(actor, contract_id)
        key = getattr(info, columns[which])
        if not key:
            raise DocumentNotFoundError(_ENTITY, info.id)
        return self._load(info.id, key)

    # =========================================================================
    # Internal
    # =========================================================================

    def _get(self, contract_id: UUID) -> Contract:
        contract = self.session.get(Contract, contract_id, populate_existing=True)
        if contract is None:
            raise ContractNotFoundError(str(contract_id))
        return contract

    def _reload(self, contract_id: UUID) -> Contract:
        return self.session.execute(
            select(Contract)
            .where(Contract.id == contract_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _by_proposal(self, proposal_id: UUID) -> Contract | None:
        return self.session.execute(
            select(Contract).where(Contract.proposal_id == proposal_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _current_status(self, contract_id: UUID) -> str | None:
        return self.session.execute(
            select(Contract.status).where(Contract.id == contract_id)
        ).scalar_one_or_none()

    def _guard_transition(
        self, contract: Contract, action: str, target: ContractStatus
    ) -> None:
        self._guard_in(contract, action, contract_sources(target))

    def _guard_in(
        self, contract: Contract, action: str, allowed: frozenset[ContractStatus]
    ) -> None:
        if ContractStatus(contract.status) not in allowed:
            raise InvalidTransitionError(
                _ENTITY, contract.id, action, contract.status, allowed
            )

    def _claim(
        self,
        contract_id: UUID,
        expected: frozenset[ContractStatus],
        **values: Any,
    ) -> None:
        """Conditional UPDATE re-checking the status guard after I/O."""
        updated = self.session.execute(
            update(Contract)
            .where(
                Contract.id == contract_id,
                Contract.status.in_([s.value for s in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if updated != 1:
            logger.warning(
                "contract_write_conflict",
                extra={"contract_id": str(contract_id), "target": values.get("status")},
            )
            raise ConflictingWriteError(
                _ENTITY, contract_id, "Contract status changed while the operation was running"
            )

    def _check_token(self, contract: Contract, token: str) -> None:
        if not contract.submission_token:
            raise InvalidTransitionError(
                _ENTITY,
                contract.id,
                "submit",
                contract.status,
                message="This contract does not have a submission token",
            )
        if not hmac.compare_digest(
            contract.submission_token.encode(), (token or "").encode()
        ):
            logger.warning("contract_token_rejected", extra={"contract_id": str(contract.id)})
            raise InvalidTokenError("submit signed contract")
        if contract.status != ContractStatus.SENT_TO_CLIENT.value:
            if contract.signed_at is not None:
                raise AlreadySignedError(str(contract.id), contract.status)
            raise InvalidTransitionError(
                _ENTITY,
                contract.id,
                "submit",
                contract.status,
                (ContractStatus.SENT_TO_CLIENT,),
                message="This contract is not available for signing",
            )

    def _document_data(
        self, contract: Contract, edited: ContractDetails | None
    ) -> dict[str, Any]:
        details = edited or ContractDetails.from_mapping(contract.contract_details or {})
        proposal = self.session.get(Proposal, contract.proposal_id)
        return build_contract_document(
            details,
            proposal.proposal_number if proposal else None,
            self._clock.today(),
        )

    def _record_fulfilment(
        self,
        actor: Actor,
        contract_id: UUID,
        key: str,
        admin_notes: str | None,
        edited: ContractDetails | None,
        source: str,
    ) -> ContractInfo:
        with self._transaction():
            previous = self._current_status(contract_id)
            now = self._clock.now()
            values: dict[str, Any] = {
                "status": ContractStatus.SENT_TO_SALES.value,
                "document_key": key,
                "admin_notes": admin_notes,
                "fulfilled_by": actor.actor_id,
                "fulfilled_at": now,
                "updated_at": now,
            }
            if edited is not None:
                values.update(_detail_columns(edited))
            self._claim(contract_id, CONTRACT_FULFILLABLE, **values)
            self._auditor.record_transition(
                _ENTITY,
                contract_id,
                AuditAction.CONTRACT_FULFILLED,
                actor.actor_id,
                previous,
                ContractStatus.SENT_TO_SALES.value,
                source=source,
                document_key=key,
                details_edited=edited is not None,
            )
            info = _to_dto(self._reload(contract_id))

        logger.info(
            "contract_fulfilled",
            extra={"contract_id": str(contract_id), "source": source},
        )
        if self._notifier is not None:
            run_non_critical(
                "contract_fulfilled",
                self._notifier.notify,
                Notification("contract_fulfilled", info.requested_by, {"contract_id": str(info.id)}),
            )
        return info

    def _notify_admins(self, event: str, info: ContractInfo) -> None:
        if self._notifier is None:
            return
        run_non_critical(
            event,
            self._notifier.notify,
            Notification(event, None, {"contract_id": str(info.id)}),
        )

    def _key(self, kind: str, stem: str, ext: str) -> str:
        stamp = int(self._clock.now().timestamp())
        return document_key(kind, self._clock.today(), f"{stem}-{stamp}{ext}")

    def _load(self, contract_id: UUID, key: str) -> bytes:
        try:
            return self._blobs.get(key)
        except (KeyError, FileNotFoundError):
            raise DocumentNotFoundError(_ENTITY, contract_id, key) from None
