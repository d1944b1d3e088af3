"""
Collaborator ports (``deal_kernel.domain.ports``).

Responsibility
--------------
Narrow interfaces for everything the lifecycle core consumes but does not
own: the inquiry store, blob storage, document rendering, email delivery
and notifications.  Concrete adapters live in ``deal_services``; tests
supply in-memory fakes.

Architecture position
---------------------
**Kernel domain layer** -- Protocols and value objects only.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable
from uuid import UUID


@dataclass(frozen=True)
class InquiryInfo:
    """Read model of an inbound inquiry."""

    id: UUID
    name: str | None
    email: str | None
    company: str | None = None
    service_category: str | None = None
    status: str | None = None
    phone: str | None = None
    position: str | None = None
    address: str | None = None


class InquiryStatus:
    """Inquiry status the proposal lifecycle advances to."""

    SUBMITTED_PROPOSAL = "submitted_proposal"


@runtime_checkable
class InquiryStore(Protocol):
    def get_by_id(self, inquiry_id: UUID) -> InquiryInfo | None: ...

    def update_status(self, inquiry_id: UUID, new_status: str) -> None: ...


@runtime_checkable
class BlobStore(Protocol):
    """Opaque byte storage.  Keys are ``<kind>/<YYYY-MM-DD>/<filename>``."""

    def put(self, key: str, data: bytes, content_type: str) -> str: ...

    def get(self, key: str) -> bytes: ...


@runtime_checkable
class DocumentRenderer(Protocol):
    def render(self, template_html: str, data: dict[str, Any]) -> str:
        """Compile a template with structured data. Pure and synchronous."""
        ...

    def to_pdf(self, html: str) -> bytes:
        """Rasterize HTML to a paginated PDF. Timeout-bounded."""
        ...


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    message_id: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, message_id: str | None) -> DeliveryResult:
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, error: str) -> DeliveryResult:
        return cls(success=False, error=error)


@runtime_checkable
class DeliveryGateway(Protocol):
    def send(
        self,
        to: str,
        subject: str,
        html: str,
        attachment: Attachment | None = None,
    ) -> DeliveryResult:
        """Deliver one message. Reports failure in the result, never raises."""
        ...


@dataclass(frozen=True)
class Notification:
    event: str
    recipient_id: UUID | None
    payload: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Notifier(Protocol):
    """Fire-and-forget notification sink."""

    def notify(self, notification: Notification) -> None: ...
