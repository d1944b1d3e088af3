"""Lifecycle settings consumed by the proposal and contract services."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class LifecycleSettings:
    """
    Tunables of the two lifecycles.

    ``category_templates`` maps an inquiry's service category to the
    proposal template type suggested for it.
    """

    company_name: str = "WastePH"
    public_base_url: str = "http://localhost:5173"
    company_logo_url: str = "https://wasteph.com/logo.png"
    default_validity_days: int = 30
    proposal_number_prefix: str = "PROP"
    currency_symbol: str = "₱"
    category_templates: dict[str, str] = field(default_factory=dict)

    @property
    def proposal_subject(self) -> str:
        return f"Proposal from {self.company_name}"

    @property
    def contract_subject(self) -> str:
        return f"Contract from {self.company_name}"

    @property
    def proposal_attachment_name(self) -> str:
        return f"{self.company_name}_Proposal.pdf"

    @property
    def contract_attachment_name(self) -> str:
        return f"{self.company_name}_Contract.pdf"

    def proposal_response_url(self, proposal_id: object, token: str, answer: str) -> str:
        base = self.public_base_url.rstrip("/")
        return f"{base}/proposals/{proposal_id}/respond?token={token}&answer={answer}"

    def contract_signing_url(self, contract_id: object, token: str) -> str:
        base = self.public_base_url.rstrip("/")
        return f"{base}/contracts/{contract_id}/sign?token={token}"
