"""
Lifecycle domain types (``deal_kernel.domain.lifecycle``).

Responsibility
--------------
Status enumerations and transition tables for the two coupled state
machines: Proposal and Contract.  The tables are the only source of truth
for which status moves are legal; services consult them before every
write.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Proposal: ``rejected -> pending`` (revision) is the only back-edge.
  ``sent`` and ``cancelled`` are terminal.
* Contract: strictly linear.  Each status has exactly one forward
  successor; ``sent_to_sales -> sent_to_sales`` is the single self-loop
  (repeated admin fulfilment).
"""

from __future__ import annotations

from enum import Enum


# =========================================================================
# Proposal
# =========================================================================


class ProposalStatus(str, Enum):
    """Proposal lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SENT = "sent"
    CANCELLED = "cancelled"


class EmailStatus(str, Enum):
    """Delivery outcome, tracked apart from the business status."""

    SENT = "sent"
    FAILED = "failed"


class ClientResponse(str, Enum):
    """Counterparty answer to a sent proposal."""

    ACCEPTED = "accepted"
    DECLINED = "declined"


PROPOSAL_TRANSITIONS: dict[ProposalStatus, frozenset[ProposalStatus]] = {
    ProposalStatus.PENDING: frozenset({
        ProposalStatus.APPROVED,
        ProposalStatus.REJECTED,
        ProposalStatus.CANCELLED,
    }),
    ProposalStatus.REJECTED: frozenset({ProposalStatus.PENDING}),
    ProposalStatus.APPROVED: frozenset({ProposalStatus.SENT}),
    ProposalStatus.SENT: frozenset(),
    ProposalStatus.CANCELLED: frozenset(),
}

# Statuses in which the requester may still edit the proposal payload.
PROPOSAL_EDITABLE: frozenset[ProposalStatus] = frozenset({
    ProposalStatus.PENDING,
    ProposalStatus.REJECTED,
})

# Statuses in which a failed delivery may be retried by an admin.
PROPOSAL_RETRYABLE: frozenset[ProposalStatus] = frozenset({
    ProposalStatus.PENDING,
    ProposalStatus.APPROVED,
})


# =========================================================================
# Contract
# =========================================================================


class ContractStatus(str, Enum):
    """Contract lifecycle states, in order."""

    PENDING_REQUEST = "pending_request"
    REQUESTED = "requested"
    SENT_TO_SALES = "sent_to_sales"
    SENT_TO_CLIENT = "sent_to_client"
    SIGNED = "signed"
    HARDBOUND_RECEIVED = "hardbound_received"


CONTRACT_ORDER: tuple[ContractStatus, ...] = tuple(ContractStatus)

CONTRACT_TRANSITIONS: dict[ContractStatus, frozenset[ContractStatus]] = {
    ContractStatus.PENDING_REQUEST: frozenset({ContractStatus.REQUESTED}),
    ContractStatus.REQUESTED: frozenset({ContractStatus.SENT_TO_SALES}),
    ContractStatus.SENT_TO_SALES: frozenset({
        ContractStatus.SENT_TO_SALES,
        ContractStatus.SENT_TO_CLIENT,
    }),
    ContractStatus.SENT_TO_CLIENT: frozenset({ContractStatus.SIGNED}),
    ContractStatus.SIGNED: frozenset({ContractStatus.HARDBOUND_RECEIVED}),
    ContractStatus.HARDBOUND_RECEIVED: frozenset(),
}

# Statuses from which an admin may (re)fulfil or save a draft.
CONTRACT_FULFILLABLE: frozenset[ContractStatus] = frozenset({
    ContractStatus.REQUESTED,
    ContractStatus.SENT_TO_SALES,
})


class ContractType(str, Enum):
    LONG_TERM_VARIABLE = "long_term_variable"
    LONG_TERM_FIXED = "long_term_fixed"
    FIXED_RATE_TERM = "fixed_rate_term"
    GARBAGE_BINS = "garbage_bins"
    GARBAGE_BINS_DISPOSAL = "garbage_bins_disposal"


class TemplateKind(str, Enum):
    """Which document family a template renders."""

    PROPOSAL = "proposal"
    CONTRACT = "contract"


def proposal_sources(target: ProposalStatus) -> frozenset[ProposalStatus]:
    """Statuses from which ``target`` is reachable in one step."""
    return frozenset(
        src for src, targets in PROPOSAL_TRANSITIONS.items() if target in targets
    )


def contract_sources(target: ContractStatus) -> frozenset[ContractStatus]:
    """Statuses from which ``target`` is reachable in one step."""
    return frozenset(
        src for src, targets in CONTRACT_TRANSITIONS.items() if target in targets
    )


def contract_has_reached(current: ContractStatus, milestone: ContractStatus) -> bool:
    """True when ``current`` is at or beyond ``milestone`` in the linear order."""
    return CONTRACT_ORDER.index(current) >= CONTRACT_ORDER.index(milestone)
