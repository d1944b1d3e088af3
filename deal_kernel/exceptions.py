"""
Typed exception hierarchy for the deal kernel.

Every failure a lifecycle operation can report to its caller is one of
seven kinds.  Callers catch by type, read the machine-readable ``code``
class attribute, and render a specific message from the structured
attributes (which field, which guard, which required state) instead of
parsing message strings.

    DealKernelError (base)
    |
    +-- NotFoundError
    |   +-- ProposalNotFoundError
    |   +-- ContractNotFoundError
    |   +-- TemplateNotFoundError
    |   +-- NoTemplatesConfiguredError
    |   +-- InquiryNotFoundError
    |   +-- DocumentNotFoundError
    |
    +-- InvalidTransitionError
    |   +-- AlreadySignedError
    |
    +-- ForbiddenError
    |   +-- InvalidTokenError
    |
    +-- ValidationFailedError
    |   +-- DuplicateActiveTemplateError
    |
    +-- RenderFailedError
    +-- DeliveryFailedError
    +-- ConflictingWriteError

Propagation:
    Guard violations and not-found are raised immediately and never retried
    internally.  RenderFailedError and DeliveryFailedError are raised after
    the failure has been persisted as state where the operation requires it
    (``email_status=failed`` plus the stored document on proposal send).
"""

from collections.abc import Iterable


class DealKernelError(Exception):
    """
    Base exception for all deal kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "DEAL_KERNEL_ERROR"


# Not found


class NotFoundError(DealKernelError):
    """An entity, template or document does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str | None, message: str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(message or f"{entity_type} not found: {entity_id}")


class ProposalNotFoundError(NotFoundError):
    code: str = "PROPOSAL_NOT_FOUND"

    def __init__(self, proposal_id: str):
        super().__init__("Proposal", str(proposal_id))


class ContractNotFoundError(NotFoundError):
    code: str = "CONTRACT_NOT_FOUND"

    def __init__(self, contract_id: str):
        super().__init__("Contract", str(contract_id))


class TemplateNotFoundError(NotFoundError):
    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str):
        super().__init__("Template", str(template_id))


class NoTemplatesConfiguredError(NotFoundError):
    """No active template exists for a kind at all.

    This is a configuration error, not an empty result.
    """

    code: str = "NO_TEMPLATES_CONFIGURED"

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(
            "Template", None, f"No {kind} templates available"
        )


class InquiryNotFoundError(NotFoundError):
    code: str = "INQUIRY_NOT_FOUND"

    def __init__(self, inquiry_id: str):
        super().__init__("Inquiry", str(inquiry_id))


class ClientNotFoundError(NotFoundError):
    code: str = "CLIENT_NOT_FOUND"

    def __init__(self, client_id: str):
        super().__init__("Client", str(client_id))


class DocumentNotFoundError(NotFoundError):
    """A document reference is missing or the blob store has no bytes for it."""

    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str, key: str | None = None):
        self.key = key
        super().__init__(
            entity_type,
            str(entity_id),
            f"No document stored for {entity_type} {entity_id}",
        )


# Status guards


def _status_value(status):
    return getattr(status, "value", status)


class InvalidTransitionError(DealKernelError):
    """A status guard rejected the operation."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        current_status: str | None,
        allowed_statuses: Iterable[str] = (),
        message: str | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.action = action
        self.current_status = _status_value(current_status)
        self.allowed_statuses = sorted(_status_value(s) for s in allowed_statuses)
        if message is None:
            allowed = ", ".join(self.allowed_statuses) or "none"
            message = (
                f"Cannot {action} {entity_type} {entity_id} in status "
                f"{self.current_status!r} (requires: {allowed})"
            )
        super().__init__(message)


class AlreadySignedError(InvalidTransitionError):
    """The contract has already been signed."""

    code: str = "ALREADY_SIGNED"

    def __init__(self, contract_id: str, current_status: str | None):
        super().__init__(
            "Contract",
            contract_id,
            "sign",
            current_status,
            ("sent_to_client",),
            message="This contract has already been signed",
        )


# Permissions


class ForbiddenError(DealKernelError):
    """An ownership, role or token guard rejected the actor."""

    code: str = "FORBIDDEN"

    def __init__(self, operation: str, reason: str, actor_id: str | None = None):
        self.operation = operation
        self.reason = reason
        self.actor_id = actor_id
        super().__init__(f"Not allowed to {operation}: {reason}")


class InvalidTokenError(ForbiddenError):
    """A submission or response token did not match."""

    code: str = "INVALID_TOKEN"

    def __init__(self, operation: str):
        super().__init__(operation, "invalid or expired link")


# Input validation


class ValidationFailedError(DealKernelError):
    """A required field is missing or malformed."""

    code: str = "VALIDATION_FAILED"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class DuplicateActiveTemplateError(ValidationFailedError):
    code: str = "DUPLICATE_ACTIVE_TEMPLATE"

    def __init__(self, kind: str, template_type: str):
        self.kind = kind
        self.template_type = template_type
        super().__init__(
            "template_type",
            f"an active {kind} template of type {template_type!r} already exists",
        )


# Infrastructure outcomes


class RenderFailedError(DealKernelError):
    """
    Document generation failed.

    The message is deliberately generic so it can be shown to end users.
    The underlying cause is attached as ``__cause__`` and the failing
    phase is kept for logs.
    """

    code: str = "RENDER_FAILED"

    def __init__(self, phase: str, detail: str | None = None):
        self.phase = phase
        self.detail = detail
        super().__init__("document generation failed")


class DeliveryFailedError(DealKernelError):
    """Email delivery reported failure. The outcome is persisted first."""

    code: str = "DELIVERY_FAILED"

    def __init__(self, recipient: str, error: str | None):
        self.recipient = recipient
        self.error = error
        super().__init__(f"Failed to send email to {recipient}: {error}")


class ConflictingWriteError(DealKernelError):
    """Optimistic-concurrency loss: another writer moved the entity first."""

    code: str = "CONFLICTING_WRITE"

    def __init__(self, entity_type: str, entity_id: str, message: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(message)
