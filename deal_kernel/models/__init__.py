"""Domain models for the deal kernel."""

from deal_kernel.models.audit_event import AuditAction, AuditEvent
from deal_kernel.models.client import Client, ClientStatus
from deal_kernel.models.contract import Contract
from deal_kernel.models.document_template import DocumentTemplate
from deal_kernel.models.proposal import Proposal

__all__ = [
    "AuditAction",
    "AuditEvent",
    "Client",
    "ClientStatus",
    "Contract",
    "DocumentTemplate",
    "Proposal",
]
