"""
ClientService -- durable client records keyed by normalized email.

Responsibility:
    Idempotent upsert-by-natural-key used when a contract is signed:
    look the client up by normalized email, create it only on a miss.

Architecture position:
    Kernel > Services -- flush-only helper.  Runs inside the caller's
    transaction (ContractService.record_signing) so that client creation
    and the signed transition commit or roll back together.

Invariants enforced:
    - One row per normalized (trimmed, lower-cased) email.  The unique
      constraint backs the lookup; a concurrent insert that loses the race
      is rolled back to its savepoint and the winner's row is returned.

Failure modes:
    - ValidationFailedError for an empty email.
    - Other storage errors propagate and fail the enclosing transaction.
"""

from dataclasses import dataclass
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deal_kernel.exceptions import ClientNotFoundError, ValidationFailedError
from deal_kernel.logging_config import get_logger
from deal_kernel.models.client import Client, ClientStatus, normalize_email

logger = get_logger("services.client")


@dataclass(frozen=True)
class ClientInfo:
    """Immutable DTO for a client."""

    id: UUID
    email: str
    company_name: str | None
    contact_person: str | None
    address: str | None
    contract_start_date: date | None
    contract_end_date: date | None
    status: ClientStatus


@dataclass(frozen=True)
class ClientProfile:
    """Fields used when a client has to be created."""

    company_name: str | None = None
    contact_person: str | None = None
    phone: str | None = None
    address: str | None = None
    contract_start_date: date | None = None
    contract_end_date: date | None = None


def _to_dto(client: Client) -> ClientInfo:
    return ClientInfo(
        id=client.id,
        email=client.email,
        company_name=client.company_name,
        contact_person=client.contact_person,
        address=client.address,
        contract_start_date=client.contract_start_date,
        contract_end_date=client.contract_end_date,
        status=ClientStatus(client.status),
    )


class ClientService:
    """Client lookup and provisioning. Never commits."""

    def __init__(self, session: Session):
        self._session = session

    def find_by_email(self, email: str) -> ClientInfo | None:
        client = self._find(normalize_email(email))
        return _to_dto(client) if client else None

    def get(self, client_id: UUID) -> ClientInfo:
        client = self._session.get(Client, client_id)
        if client is None:
            raise ClientNotFoundError(str(client_id))
        return _to_dto(client)

    def get_or_create(self, email: str, profile: ClientProfile) -> tuple[ClientInfo, bool]:
        """
        Return the client for ``email``, creating it on a miss.

        Returns:
            (client, created)
        """
        normalized = normalize_email(email or "")
        if not normalized:
            raise ValidationFailedError("client_email", "is required to provision a client")

        existing = self._find(normalized)
        if existing is not None:
            return _to_dto(existing), False

        savepoint = self._session.begin_nested()
        try:
            client = Client(
                email=normalized,
                company_name=profile.company_name,
                contact_person=profile.contact_person,
                phone=profile.phone,
                address=profile.address,
                contract_start_date=profile.contract_start_date,
                contract_end_date=profile.contract_end_date,
                status=ClientStatus.ACTIVE,
            )
            self._session.add(client)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            # Another transaction created the same email first
            logger.debug("client_create_race_retry", extra={"email": normalized})
            savepoint.rollback()
            winner = self._find(normalized)
            if winner is None:
                raise
            return _to_dto(winner), False

        logger.info(
            "client_provisioned",
            extra={"client_id": str(client.id), "email": normalized},
        )
        return _to_dto(client), True

    def _find(self, normalized_email: str) -> Client | None:
        return self._session.execute(
            select(Client).where(Client.email == normalized_email)
        ).scalar_one_or_none()
