"""
Tests for ProposalService.

Covers the review state machine (create, revise, approve, reject, cancel),
delivery (send, failure persistence, retry), the prospect's response
through the emailed links, ownership rules and the read side.
"""

from uuid import uuid4

import pytest
from sqlalchemy import update

from deal_kernel.domain.lifecycle import (
    ClientResponse,
    EmailStatus,
    ProposalStatus,
    TemplateKind,
)
from deal_kernel.domain.ports import InquiryStatus
from deal_kernel.exceptions import (
    DeliveryFailedError,
    DocumentNotFoundError,
    ForbiddenError,
    InquiryNotFoundError,
    InvalidTokenError,
    InvalidTransitionError,
    NoTemplatesConfiguredError,
    ProposalNotFoundError,
    RenderFailedError,
    ValidationFailedError,
)
from deal_kernel.models.audit_event import AuditAction
from deal_kernel.models.proposal import Proposal


# =============================================================================
# Creation
# =============================================================================


class TestCreate:
    def test_create_is_pending_with_numbered_suggestion(
        self, proposals, sales, inquiry, proposal_template, make_payload
    ):
        info = proposals.create(sales, inquiry.id, make_payload())

        assert info.status == ProposalStatus.PENDING
        assert info.proposal_number == "PROP-20260131-0001"
        assert info.template_id == proposal_template.id
        assert info.was_template_suggested is True
        assert info.requested_by == sales.actor_id
        assert info.email_status is None
        assert info.sent_at is None

    def test_numbers_increase_within_the_day(
        self, proposals, sales, inquiry, proposal_template, make_payload
    ):
        first = proposals.create(sales, inquiry.id, make_payload())
        second = proposals.create(sales, inquiry.id, make_payload())

        assert first.proposal_number == "PROP-20260131-0001"
        assert second.proposal_number == "PROP-20260131-0002"

    def test_explicit_template_is_not_marked_suggested(
        self, proposals, templates, admin, sales, inquiry, proposal_template, make_payload
    ):
        other = templates.create(
            admin, TemplateKind.PROPOSAL, "fixed_monthly", "Fixed monthly", "<p>{{ clientName }}</p>"
        )

        info = proposals.create(sales, inquiry.id, make_payload(), template_id=other.id)

        assert info.template_id == other.id
        assert info.was_template_suggested is False

    def test_contract_template_cannot_render_a_proposal(
        self, proposals, sales, inquiry, proposal_template, contract_template, make_payload
    ):
        with pytest.raises(ValidationFailedError) as exc_info:
            proposals.create(sales, inquiry.id, make_payload(), template_id=contract_template.id)

        assert exc_info.value.field == "template_id"

    def test_inactive_template_is_rejected(
        self, proposals, templates, admin, sales, inquiry, proposal_template, make_payload
    ):
        spare = templates.create(
            admin, TemplateKind.PROPOSAL, "one_time_hauling", "One time", "<p>x</p>"
        )
        templates.soft_delete(admin, spare.id)

        with pytest.raises(ValidationFailedError):
            proposals.create(sales, inquiry.id, make_payload(), template_id=spare.id)

    def test_unknown_inquiry(self, proposals, sales, proposal_template, make_payload):
        with pytest.raises(InquiryNotFoundError):
            proposals.create(sales, uuid4(), make_payload())

    def test_no_templates_configured(self, proposals, sales, inquiry, make_payload):
        with pytest.raises(NoTemplatesConfiguredError):
            proposals.create(sales, inquiry.id, make_payload())

    def test_payload_must_be_a_mapping(self, proposals, sales, inquiry, proposal_template):
        with pytest.raises(ValidationFailedError) as exc_info:
            proposals.create(sales, inquiry.id, ["not", "a", "mapping"])

        assert exc_info.value.field == "proposal_data"

    def test_malformed_pricing_is_rejected(
        self, proposals, sales, inquiry, proposal_template, make_payload
    ):
        with pytest.raises(ValidationFailedError) as exc_info:
            proposals.create(sales, inquiry.id, make_payload(pricing="see attached"))

        assert exc_info.value.field == "proposal_data.pricing"
        assert list(proposals.list_for_actor(sales)) == []

    def test_create_is_audited(self, proposals, auditor, pending_proposal):
        trace = auditor.get_trace("Proposal", pending_proposal.id)

        assert trace.actions == (AuditAction.PROPOSAL_CREATED,)
        assert trace.entries[0].payload["to_status"] == "pending"
        assert trace.entries[0].payload["proposal_number"] == pending_proposal.proposal_number


# =============================================================================
# Review
# =============================================================================


class TestReview:
    def test_admin_approves(self, proposals, admin, pending_proposal, notifier):
        info = proposals.approve(admin, pending_proposal.id, admin_notes="Looks right")

        assert info.status == ProposalStatus.APPROVED
        assert info.reviewed_by == admin.actor_id
        assert info.reviewed_at is not None
        assert info.admin_notes == "Looks right"
        assert "proposal_approved" in notifier.events

    def test_sales_cannot_approve_even_their_own(self, proposals, sales, pending_proposal):
        with pytest.raises(ForbiddenError):
            proposals.approve(sales, pending_proposal.id)

    def test_master_sales_cannot_approve(self, proposals, master_sales, pending_proposal):
        with pytest.raises(ForbiddenError):
            proposals.approve(master_sales, pending_proposal.id)

    def test_approve_twice_is_an_invalid_transition(self, proposals, admin, approved_proposal):
        with pytest.raises(InvalidTransitionError) as exc_info:
            proposals.approve(admin, approved_proposal.id)

        assert exc_info.value.current_status == "approved"
        assert exc_info.value.allowed_statuses == ["pending"]

    def test_reject_requires_a_reason(self, proposals, admin, pending_proposal):
        with pytest.raises(ValidationFailedError) as exc_info:
            proposals.reject(admin, pending_proposal.id, "   ")

        assert exc_info.value.field == "rejection_reason"
        assert proposals.get(admin, pending_proposal.id).status == ProposalStatus.PENDING

    def test_reject_records_reason_and_reviewer(self, proposals, admin, pending_proposal, notifier):
        info = proposals.reject(admin, pending_proposal.id, "Pricing too low")

        assert info.status == ProposalStatus.REJECTED
        assert info.rejection_reason == "Pricing too low"
        assert info.reviewed_by == admin.actor_id
        assert notifier.notifications[-1].payload["reason"] == "Pricing too low"

    def test_revising_a_rejected_proposal_returns_it_to_pending(
        self, proposals, admin, sales, pending_proposal, auditor, make_payload
    ):
        proposals.reject(admin, pending_proposal.id, "Add bin rental")

        revised = proposals.update(
            sales, pending_proposal.id, make_payload(terms={"paymentTerms": "Net 15"})
        )

        assert revised.status == ProposalStatus.PENDING
        assert revised.rejection_reason is None
        assert revised.reviewed_by is None
        assert revised.reviewed_at is None
        assert revised.proposal_data["terms"]["paymentTerms"] == "Net 15"
        actions = set(auditor.get_trace("Proposal", pending_proposal.id).actions)
        assert AuditAction.PROPOSAL_REVISED in actions

    def test_update_pending_keeps_status(self, proposals, sales, pending_proposal, make_payload):
        info = proposals.update(sales, pending_proposal.id, make_payload(siteVisit="Tuesday"))

        assert info.status == ProposalStatus.PENDING
        assert info.proposal_data["siteVisit"] == "Tuesday"

    def test_approved_proposal_is_frozen(self, proposals, sales, approved_proposal, make_payload):
        with pytest.raises(InvalidTransitionError):
            proposals.update(sales, approved_proposal.id, make_payload())

    def test_other_sales_cannot_update(self, proposals, other_sales, pending_proposal, make_payload):
        with pytest.raises(ForbiddenError):
            proposals.update(other_sales, pending_proposal.id, make_payload())

    def test_master_sales_may_update(self, proposals, master_sales, pending_proposal, make_payload):
        info = proposals.update(master_sales, pending_proposal.id, make_payload(siteVisit="Friday"))

        assert info.proposal_data["siteVisit"] == "Friday"


class TestCancel:
    def test_requester_cancels_pending(self, proposals, sales, pending_proposal):
        info = proposals.cancel(sales, pending_proposal.id)

        assert info.status == ProposalStatus.CANCELLED

    def test_admin_cannot_cancel(self, proposals, admin, pending_proposal):
        with pytest.raises(ForbiddenError):
            proposals.cancel(admin, pending_proposal.id)

    def test_cannot_cancel_after_approval(self, proposals, sales, approved_proposal):
        with pytest.raises(InvalidTransitionError):
            proposals.cancel(sales, approved_proposal.id)

    def test_cancelled_is_terminal(self, proposals, admin, sales, pending_proposal, make_payload):
        proposals.cancel(sales, pending_proposal.id)

        with pytest.raises(InvalidTransitionError):
            proposals.approve(admin, pending_proposal.id)
        with pytest.raises(InvalidTransitionError):
            proposals.update(sales, pending_proposal.id, make_payload())


# =============================================================================
# Send
# =============================================================================


class TestSend:
    def test_send_marks_sent_and_stores_document(
        self, proposals, sales, approved_proposal, gateway, blobs, inquiry
    ):
        info = proposals.send(sales, approved_proposal.id)

        assert info.status == ProposalStatus.SENT
        assert info.sent_by == sales.actor_id
        assert info.sent_at is not None
        assert info.email_status == EmailStatus.SENT
        assert info.email_error is None
        assert info.document_key.startswith("proposals/2026-01-31/proposal-")
        assert blobs.get(info.document_key).startswith(b"%PDF")

        assert len(gateway.sent) == 1
        email = gateway.sent[0]
        assert email.to == inquiry.email
        assert email.subject == "Proposal from WastePH"
        assert email.attachment.filename == "WastePH_Proposal.pdf"
        assert email.attachment.content == blobs.get(info.document_key)
        assert f"/proposals/{info.id}/respond?token=" in email.html

    def test_rendered_document_carries_inquiry_and_pricing(
        self, proposals, sales, approved_proposal, renderer
    ):
        proposals.send(sales, approved_proposal.id)

        html = renderer.rendered_html[0]
        assert "Proposal for Santos Trading" in html
        assert "Maria Santos" in html
        assert "₱50,000.00" in html
        assert "₱1,500.50" in html
        assert "VAT (12%) ₱6,360.12" in html
        assert "Total ₱59,361.12" in html
        assert "Date: January 31, 2026 | Valid until: March 2, 2026" in html

    def test_send_advances_the_inquiry(self, proposals, sales, approved_proposal, inquiries, inquiry):
        proposals.send(sales, approved_proposal.id)

        assert inquiries.status_updates == [(inquiry.id, InquiryStatus.SUBMITTED_PROPOSAL)]

    def test_send_is_audited(self, proposals, sales, approved_proposal, auditor):
        info = proposals.send(sales, approved_proposal.id)

        trace = auditor.get_trace("Proposal", info.id)
        assert set(trace.actions) == {
            AuditAction.PROPOSAL_CREATED,
            AuditAction.PROPOSAL_APPROVED,
            AuditAction.PROPOSAL_SENT,
        }
        sent = next(e for e in trace.entries if e.action == AuditAction.PROPOSAL_SENT)
        assert sent.payload["document_key"] == info.document_key
        assert sent.actor_id == sales.actor_id

    def test_only_the_requester_sends(self, proposals, admin, other_sales, master_sales, approved_proposal):
        for actor in (admin, other_sales, master_sales):
            with pytest.raises(ForbiddenError):
                proposals.send(actor, approved_proposal.id)

    def test_pending_proposal_cannot_be_sent(self, proposals, sales, pending_proposal, gateway):
        with pytest.raises(InvalidTransitionError):
            proposals.send(sales, pending_proposal.id)

        assert gateway.sent == []

    def test_sent_proposal_cannot_be_sent_again(self, proposals, sales, sent_proposal, gateway):
        with pytest.raises(InvalidTransitionError):
            proposals.send(sales, sent_proposal.id)

        assert len(gateway.sent) == 1

    def test_render_failure_changes_nothing(
        self, proposals, sales, approved_proposal, renderer, gateway, blobs
    ):
        renderer.fail_pdf = True

        with pytest.raises(RenderFailedError):
            proposals.send(sales, approved_proposal.id)

        info = proposals.get(sales, approved_proposal.id)
        assert info.status == ProposalStatus.APPROVED
        assert info.email_status is None
        assert info.document_key is None
        assert gateway.sent == []
        assert blobs.blobs == {}

    def test_missing_template_field_is_a_render_failure(
        self, proposals, templates, admin, sales, inquiry, proposal_template, make_payload
    ):
        strict = templates.create(
            admin,
            TemplateKind.PROPOSAL,
            "clearing_project",
            "Clearing",
            "<p>{{ clientName }} {{ wasteAllowance }}</p>",
        )
        draft = proposals.create(sales, inquiry.id, make_payload(), template_id=strict.id)
        proposals.approve(admin, draft.id)

        with pytest.raises(RenderFailedError) as exc_info:
            proposals.send(sales, draft.id)

        assert exc_info.value.phase == "data"
        assert "wasteAllowance" in exc_info.value.detail

    def test_validity_runs_from_creation_date(
        self, proposals, admin, sales, pending_proposal, clock, renderer, gateway
    ):
        clock.advance(10 * 86400)
        proposals.approve(admin, pending_proposal.id)

        info = proposals.send(sales, pending_proposal.id)

        assert info.document_key.startswith("proposals/2026-02-10/")
        assert "Date: February 10, 2026 | Valid until: March 2, 2026" in renderer.rendered_html[0]
        assert "valid until <strong>March 2, 2026</strong>" in gateway.sent[0].html

    def test_malformed_stored_payload_is_a_validation_failure(
        self, proposals, sales, approved_proposal, session, gateway, blobs
    ):
        session.execute(
            update(Proposal)
            .where(Proposal.id == approved_proposal.id)
            .values(proposal_data={"pricing": "see attached"})
        )
        session.commit()

        with pytest.raises(ValidationFailedError) as exc_info:
            proposals.send(sales, approved_proposal.id)

        assert exc_info.value.field == "proposal_data.pricing"
        info = proposals.get(sales, approved_proposal.id)
        assert info.status == ProposalStatus.APPROVED
        assert info.email_status is None
        assert gateway.sent == []
        assert blobs.blobs == {}

    def test_delivery_failure_is_persisted(
        self, proposals, sales, approved_proposal, gateway, blobs, auditor
    ):
        gateway.fail_with = "550 mailbox unavailable"

        with pytest.raises(DeliveryFailedError) as exc_info:
            proposals.send(sales, approved_proposal.id)

        assert exc_info.value.error == "550 mailbox unavailable"
        info = proposals.get(sales, approved_proposal.id)
        assert info.status == ProposalStatus.APPROVED
        assert info.email_status == EmailStatus.FAILED
        assert info.has_failed_delivery
        assert info.email_error == "550 mailbox unavailable"
        assert info.document_key in blobs.blobs
        assert info.sent_at is None
        actions = set(auditor.get_trace("Proposal", info.id).actions)
        assert AuditAction.PROPOSAL_SEND_FAILED in actions
        assert AuditAction.PROPOSAL_SENT not in actions

    def test_inquiry_store_outage_does_not_fail_the_send(
        self, proposals, sales, approved_proposal, inquiries, captured_logs
    ):
        inquiries.fail_updates = True

        info = proposals.send(sales, approved_proposal.id)

        assert info.status == ProposalStatus.SENT
        failures = [r for r in captured_logs() if r["message"] == "non_critical_effect_failed"]
        assert failures[0]["effect"] == "inquiry_status_advance"

    def test_notification_outage_does_not_fail_the_send(
        self, proposals, sales, approved_proposal, notifier
    ):
        notifier.fail = True

        info = proposals.send(sales, approved_proposal.id)

        assert info.status == ProposalStatus.SENT

    def test_send_logs_carry_operation_context(
        self, proposals, sales, approved_proposal, captured_logs
    ):
        proposals.send(sales, approved_proposal.id)

        sent = next(r for r in captured_logs() if r["message"] == "proposal_sent")
        assert sent["operation"] == "proposal.send"
        assert sent["actor_id"] == str(sales.actor_id)
        assert sent["entity_id"] == str(approved_proposal.id)


# =============================================================================
# Retry
# =============================================================================


@pytest.fixture
def failed_proposal(proposals, sales, approved_proposal, gateway):
    gateway.fail_with = "connection refused"
    with pytest.raises(DeliveryFailedError):
        proposals.send(sales, approved_proposal.id)
    gateway.fail_with = None
    return proposals.get(sales, approved_proposal.id)


class TestRetryEmail:
    def test_retry_redelivers_stored_document(
        self, proposals, admin, failed_proposal, gateway, blobs, renderer, auditor
    ):
        info = proposals.retry_email(admin, failed_proposal.id)

        assert info.email_status == EmailStatus.SENT
        assert info.email_error is None
        assert info.status == ProposalStatus.APPROVED
        assert info.document_key == failed_proposal.document_key
        assert len(renderer.rendered_html) == 1
        assert gateway.sent[-1].attachment.content == blobs.get(failed_proposal.document_key)
        actions = set(auditor.get_trace("Proposal", info.id).actions)
        assert AuditAction.PROPOSAL_EMAIL_RETRIED in actions

    def test_retry_is_admin_only(self, proposals, sales, failed_proposal):
        with pytest.raises(ForbiddenError):
            proposals.retry_email(sales, failed_proposal.id)

    def test_retry_requires_a_failed_delivery(self, proposals, admin, approved_proposal):
        with pytest.raises(InvalidTransitionError) as exc_info:
            proposals.retry_email(admin, approved_proposal.id)

        assert "failed delivery" in str(exc_info.value)

    def test_failed_retry_records_the_new_error(self, proposals, admin, failed_proposal, gateway):
        gateway.fail_with = "timeout"

        with pytest.raises(DeliveryFailedError):
            proposals.retry_email(admin, failed_proposal.id)

        info = proposals.get(admin, failed_proposal.id)
        assert info.email_status == EmailStatus.FAILED
        assert info.email_error == "timeout"

    def test_retry_with_lost_document(self, proposals, admin, failed_proposal, blobs):
        blobs.blobs.clear()

        with pytest.raises(DocumentNotFoundError):
            proposals.retry_email(admin, failed_proposal.id)

    def test_retry_keeps_the_original_validity(self, proposals, admin, failed_proposal, clock, gateway):
        clock.advance(5 * 86400)

        proposals.retry_email(admin, failed_proposal.id)

        assert "valid until <strong>March 2, 2026</strong>" in gateway.sent[-1].html


# =============================================================================
# Prospect response
# =============================================================================


class TestClientResponse:
    def test_accept(self, proposals, sent_proposal, gateway, notifier):
        token = gateway.last_token()

        info = proposals.record_client_response(sent_proposal.id, token, True, ip_address="203.0.113.9")

        assert info.client_response == ClientResponse.ACCEPTED
        assert info.client_response_at is not None
        assert info.status == ProposalStatus.SENT
        assert notifier.events[-1] == "proposal_accepted"

    def test_decline(self, proposals, sent_proposal, gateway, notifier):
        info = proposals.record_client_response(sent_proposal.id, gateway.last_token(), False)

        assert info.client_response == ClientResponse.DECLINED
        assert notifier.events[-1] == "proposal_declined"

    def test_wrong_token(self, proposals, sent_proposal):
        with pytest.raises(InvalidTokenError):
            proposals.record_client_response(sent_proposal.id, "0" * 64, True)

    def test_empty_token(self, proposals, sent_proposal):
        with pytest.raises(InvalidTokenError):
            proposals.record_client_response(sent_proposal.id, "", True)

    def test_second_answer_is_refused(self, proposals, sent_proposal, gateway):
        token = gateway.last_token()
        proposals.record_client_response(sent_proposal.id, token, True)

        with pytest.raises(InvalidTransitionError) as exc_info:
            proposals.record_client_response(sent_proposal.id, token, False)

        assert "already been answered" in str(exc_info.value)

    def test_response_is_audited_without_actor(self, proposals, auditor, sent_proposal, gateway):
        proposals.record_client_response(sent_proposal.id, gateway.last_token(), True, "198.51.100.4")

        entry = next(
            e
            for e in auditor.get_trace("Proposal", sent_proposal.id).entries
            if e.action == AuditAction.PROPOSAL_CLIENT_RESPONDED
        )
        assert entry.actor_id is None
        assert entry.ip_address == "198.51.100.4"
        assert entry.payload == {"response": "accepted"}

    def test_retried_email_cannot_be_answered_before_send(
        self, proposals, admin, failed_proposal, gateway
    ):
        proposals.retry_email(admin, failed_proposal.id)
        token = gateway.last_token()

        with pytest.raises(InvalidTransitionError):
            proposals.record_client_response(failed_proposal.id, token, True)


# =============================================================================
# Reads
# =============================================================================


class TestReads:
    def test_get_unknown(self, proposals, admin):
        with pytest.raises(ProposalNotFoundError):
            proposals.get(admin, uuid4())

    def test_find_unknown_is_none(self, proposals, admin):
        assert proposals.find(admin, uuid4()) is None

    def test_other_sales_cannot_read(self, proposals, other_sales, pending_proposal):
        with pytest.raises(ForbiddenError):
            proposals.get(other_sales, pending_proposal.id)

    def test_master_sales_reads_everything(self, proposals, master_sales, pending_proposal):
        assert proposals.get(master_sales, pending_proposal.id).id == pending_proposal.id

    def test_list_is_scoped_to_the_requester(
        self, proposals, admin, sales, other_sales, master_sales, inquiry, pending_proposal, make_payload
    ):
        mine = proposals.create(other_sales, inquiry.id, make_payload())

        assert {p.id for p in proposals.list_for_actor(sales)} == {pending_proposal.id}
        assert {p.id for p in proposals.list_for_actor(other_sales)} == {mine.id}
        assert {p.id for p in proposals.list_for_actor(admin)} == {pending_proposal.id, mine.id}
        assert len(proposals.list_for_actor(master_sales)) == 2

    def test_list_filters_by_status(self, proposals, admin, sales, inquiry, approved_proposal, make_payload):
        proposals.create(sales, inquiry.id, make_payload())

        approved = proposals.list_for_actor(admin, status=ProposalStatus.APPROVED)

        assert [p.id for p in approved] == [approved_proposal.id]

    def test_document_before_send(self, proposals, sales, approved_proposal):
        with pytest.raises(DocumentNotFoundError):
            proposals.get_document(sales, approved_proposal.id)

    def test_document_after_send(self, proposals, sales, sent_proposal):
        assert proposals.get_document(sales, sent_proposal.id).startswith(b"%PDF")
