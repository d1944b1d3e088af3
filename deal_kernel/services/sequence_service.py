"""
SequenceService -- per-day document numbering via an atomic counter upsert.

Responsibility:
    Issues strictly increasing, gap-free integers per (kind, calendar day)
    and formats them into document numbers such as ``PROP-20260131-0001``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Called by
    ProposalService when a proposal is created.

Invariants enforced:
    - Each allocation is one ``INSERT ... ON CONFLICT (kind, day) DO UPDATE
      SET current_value = current_value + 1 RETURNING current_value``
      statement.  There is no read-then-write gap, so N concurrent callers
      on the same (kind, day) receive exactly 1..N.
    - Counters are never reset; a new day starts a new row.
    - The increment is part of the caller's transaction: a rollback returns
      the value.

Failure modes:
    - Storage errors (lock timeout, connection loss) propagate unchanged.
      Callers must not assume an allocation succeeded.
"""

from datetime import date
from uuid import uuid4

from sqlalchemy import BigInteger, Date, String, UniqueConstraint, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Mapped, Session, mapped_column

from deal_kernel.db.base import Base
from deal_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    One row per (kind, day); the row's current_value is the last number
    handed out for that day.
    """

    __tablename__ = "sequence_counters"

    __table_args__ = (
        UniqueConstraint("kind", "day", name="uq_sequence_kind_day"),
    )

    # e.g. "proposal", "inquiry"
    kind: Mapped[str] = mapped_column(String(50), nullable=False)

    day: Mapped[date] = mapped_column(Date, nullable=False)

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SequenceService:
    """
    Service for allocating per-day sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.

    Usage:
        number = SequenceService(session).next_document_number(
            SequenceService.PROPOSAL, "PROP", clock.today()
        )
    """

    PROPOSAL = "proposal"

    NUMBER_WIDTH = 4

    def __init__(self, session: Session):
        self._session = session

    def allocate(self, kind: str, day: date) -> int:
        """
        Allocate the next integer for ``(kind, day)``.

        Returns:
            1 for the first allocation of the day, then 2, 3, ...
        """
        dialect = self._session.get_bind().dialect.name
        insert = _INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Sequence allocation is not supported on {dialect}")

        table = SequenceCounter.__table__
        stmt = (
            insert(table)
            .values(id=uuid4(), kind=kind, day=day, current_value=1)
            .on_conflict_do_update(
                index_elements=[table.c.kind, table.c.day],
                set_={"current_value": table.c.current_value + 1},
            )
            .returning(table.c.current_value)
        )
        value = self._session.execute(stmt).scalar_one()

        logger.debug(
            "sequence_allocated",
            extra={"kind": kind, "day": day.isoformat(), "value": value},
        )
        return value

    def next_document_number(self, kind: str, prefix: str, day: date) -> str:
        """Allocate and format ``<prefix>-YYYYMMDD-NNNN``."""
        value = self.allocate(kind, day)
        return format_document_number(prefix, day, value, self.NUMBER_WIDTH)

    def current_value(self, kind: str, day: date) -> int | None:
        """
        Last value handed out for ``(kind, day)`` without incrementing.

        Returns:
            Current value, or None if nothing was allocated that day.
        """
        return self._session.execute(
            select(SequenceCounter.current_value).where(
                SequenceCounter.kind == kind,
                SequenceCounter.day == day,
            )
        ).scalar_one_or_none()


def format_document_number(prefix: str, day: date, value: int, width: int = 4) -> str:
    """Zero-pad to ``width`` digits; larger values keep all their digits."""
    return f"{prefix}-{day:%Y%m%d}-{value:0{width}d}"
