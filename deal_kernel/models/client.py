"""
Module: deal_kernel.models.client
Responsibility: ORM persistence for durable client records provisioned
    when a contract is signed.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - email is stored normalized (trimmed, lower-cased) and is unique, so
      concurrent signings for the same address cannot create two rows.
"""

from datetime import date
from enum import Enum

from sqlalchemy import Date, String
from sqlalchemy.orm import Mapped, mapped_column

from deal_kernel.db.base import TrackedBase


class ClientStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class Client(TrackedBase):
    __tablename__ = "clients"

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_person: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    contract_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    contract_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[ClientStatus] = mapped_column(
        String(20), nullable=False, default=ClientStatus.ACTIVE
    )

    def __repr__(self) -> str:
        return f"<Client {self.email}>"
