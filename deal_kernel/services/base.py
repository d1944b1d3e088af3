"""
BaseService -- abstract base for the transactional kernel services.

Responsibility:
    Common constructor and transaction contract for the services that own
    a unit of work end to end (lifecycle transitions, template
    administration).  Flush-only helpers (SequenceService, AuditorService,
    ClientService) take a bare session instead and never commit.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - One operation, one transaction: ``_transaction()`` commits when the
      body returns and rolls back when it raises.  A failure that must
      survive as durable state is committed explicitly before raising.
    - No database transaction spans slow I/O (rendering, storage, SMTP).
      Operations that need I/O run a guard transaction, do the I/O, then
      run a write transaction whose conditional UPDATE re-checks the guard.
"""

from abc import ABC
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy.orm import Session

from deal_kernel.domain.clock import Clock, SystemClock
from deal_kernel.logging_config import get_logger
from deal_kernel.services.auditor_service import AuditorService

logger = get_logger("services.base")


class BaseService(ABC):
    """
    Abstract base class for transactional services.

    Non-goals:
        - Not thread-safe.  One service instance per session, one session
          per request handler.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)

    @property
    def clock(self) -> Clock:
        return self._clock

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            yield self.session
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise


def run_non_critical(effect: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
    """
    Invoke a best-effort side effect (notification, inquiry status advance).

    Failures are logged as ``non_critical_effect_failed`` and never reach
    the caller of the business operation.

    Returns:
        True if the effect ran without raising.
    """
    try:
        fn(*args, **kwargs)
    except Exception:
        logger.warning(
            "non_critical_effect_failed",
            exc_info=True,
            extra={"effect": effect},
        )
        return False
    return True
