"""
Deal Kernel

Proposal and contract lifecycle core for the sales back-office:
- Gap-free per-day document numbering
- Template store with single-default rules
- Proposal review and delivery state machine
- Contract fulfilment, counterparty signing and client provisioning
- Best-effort audit trail of every transition
"""

__version__ = "0.1.0"
