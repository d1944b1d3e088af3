"""Services for the deal kernel (write side)."""

from deal_kernel.services.auditor_service import AuditorService, AuditTrace, AuditTraceEntry
from deal_kernel.services.client_service import ClientInfo, ClientProfile, ClientService
from deal_kernel.services.contract_service import ContractInfo, ContractService
from deal_kernel.services.proposal_service import ProposalInfo, ProposalService
from deal_kernel.services.sequence_service import SequenceService
from deal_kernel.services.template_service import TemplateInfo, TemplateService

__all__ = [
    "AuditTrace",
    "AuditTraceEntry",
    "AuditorService",
    "ClientInfo",
    "ClientProfile",
    "ClientService",
    "ContractInfo",
    "ContractService",
    "ProposalInfo",
    "ProposalService",
    "SequenceService",
    "TemplateInfo",
    "TemplateService",
]
