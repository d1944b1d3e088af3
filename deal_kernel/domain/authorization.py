"""
deal_kernel.domain.authorization -- ownership and role policy for both lifecycles.

Responsibility:
    Decide whether an actor may perform an operation on a proposal, a
    contract or a template.  Every lifecycle transition calls exactly one
    policy function before touching state; status guards are checked
    separately by the services.

Rules:
    - ADMIN_ONLY operations (review, fulfilment, retry, hardbound, template
      management) require the admin role.
    - REQUESTER_ONLY operations (send, cancel, contract request, send to
      counterparty) require the actor to be the proposal's original
      requester.  Neither admin nor master status bypasses this.
    - OWNER operations (read, revise, document download) allow admins and
      master-level sales unconditionally; other sales actors only when
      they are the requester.

Architecture position:
    Kernel > Domain.  Pure functions, no I/O.  The identity provider
    supplies the Actor; this module treats it as opaque input.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from deal_kernel.exceptions import ForbiddenError


class Role(str, Enum):
    ADMIN = "admin"
    SALES = "sales"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as supplied by the identity provider."""

    actor_id: UUID
    role: Role
    is_master_sales: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Rule(str, Enum):
    ADMIN_ONLY = "admin_only"
    REQUESTER_ONLY = "requester_only"
    OWNER = "owner"
    ANY = "any"


class Operation(str, Enum):
    # Proposal
    PROPOSAL_CREATE = "proposal.create"
    PROPOSAL_VIEW = "proposal.view"
    PROPOSAL_UPDATE = "proposal.update"
    PROPOSAL_APPROVE = "proposal.approve"
    PROPOSAL_REJECT = "proposal.reject"
    PROPOSAL_SEND = "proposal.send"
    PROPOSAL_RETRY_EMAIL = "proposal.retry_email"
    PROPOSAL_CANCEL = "proposal.cancel"

    # Contract
    CONTRACT_VIEW = "contract.view"
    CONTRACT_REQUEST = "contract.request"
    CONTRACT_FULFILL = "contract.fulfill"
    CONTRACT_SAVE_DRAFT = "contract.save_draft"
    CONTRACT_SEND_TO_CLIENT = "contract.send_to_client"
    CONTRACT_HARDBOUND = "contract.hardbound"

    # Template
    TEMPLATE_VIEW = "template.view"
    TEMPLATE_MANAGE = "template.manage"


PROPOSAL_POLICY: dict[Operation, Rule] = {
    Operation.PROPOSAL_CREATE: Rule.OWNER,
    Operation.PROPOSAL_VIEW: Rule.OWNER,
    Operation.PROPOSAL_UPDATE: Rule.OWNER,
    Operation.PROPOSAL_APPROVE: Rule.ADMIN_ONLY,
    Operation.PROPOSAL_REJECT: Rule.ADMIN_ONLY,
    Operation.PROPOSAL_SEND: Rule.REQUESTER_ONLY,
    Operation.PROPOSAL_RETRY_EMAIL: Rule.ADMIN_ONLY,
    Operation.PROPOSAL_CANCEL: Rule.REQUESTER_ONLY,
}

CONTRACT_POLICY: dict[Operation, Rule] = {
    Operation.CONTRACT_VIEW: Rule.OWNER,
    Operation.CONTRACT_REQUEST: Rule.REQUESTER_ONLY,
    Operation.CONTRACT_FULFILL: Rule.ADMIN_ONLY,
    Operation.CONTRACT_SAVE_DRAFT: Rule.ADMIN_ONLY,
    Operation.CONTRACT_SEND_TO_CLIENT: Rule.REQUESTER_ONLY,
    Operation.CONTRACT_HARDBOUND: Rule.ADMIN_ONLY,
}

TEMPLATE_POLICY: dict[Operation, Rule] = {
    Operation.TEMPLATE_VIEW: Rule.ANY,
    Operation.TEMPLATE_MANAGE: Rule.ADMIN_ONLY,
}


def _evaluate(
    policy: dict[Operation, Rule],
    actor: Actor,
    requester_id: UUID | None,
    operation: Operation,
) -> tuple[bool, str]:
    rule = policy.get(operation)
    if rule is None:
        return (False, f"operation {operation.value} is not defined for this entity")

    if rule == Rule.ANY:
        return (True, "")

    if rule == Rule.ADMIN_ONLY:
        if actor.is_admin:
            return (True, "")
        return (False, "admin role required")

    is_requester = requester_id is not None and actor.actor_id == requester_id

    if rule == Rule.REQUESTER_ONLY:
        if is_requester:
            return (True, "")
        return (False, "only the original requester may do this")

    # OWNER
    if actor.is_admin or actor.is_master_sales or is_requester:
        return (True, "")
    return (False, "sales actors may only act on their own records")


def check_proposal_access(
    actor: Actor, requester_id: UUID | None, operation: Operation
) -> tuple[bool, str]:
    """Return (allowed, reason) for a proposal operation."""
    return _evaluate(PROPOSAL_POLICY, actor, requester_id, operation)


def check_contract_access(
    actor: Actor, requester_id: UUID | None, operation: Operation
) -> tuple[bool, str]:
    """Return (allowed, reason) for a contract operation."""
    return _evaluate(CONTRACT_POLICY, actor, requester_id, operation)


def check_template_access(actor: Actor, operation: Operation) -> tuple[bool, str]:
    """Return (allowed, reason) for a template operation."""
    return _evaluate(TEMPLATE_POLICY, actor, None, operation)


def require(decision: tuple[bool, str], actor: Actor, operation: Operation) -> None:
    """Raise ForbiddenError for a denied decision."""
    allowed, reason = decision
    if not allowed:
        raise ForbiddenError(operation.value, reason, actor_id=str(actor.actor_id))
