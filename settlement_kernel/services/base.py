"""
BaseService -- common constructor for the settlement kernel services.

Services receive a SQLAlchemy ``Session`` and a ``Clock`` from the caller
and persist with ``session.flush()`` only.  The caller (the settlement engine
facade or a test) owns commit and rollback, so several services can
participate in one atomic unit of work: a penalty instance and its ledger
debit commit together or not at all.
"""

from abc import ABC

from sqlalchemy.orm import Session

from settlement_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Non-goals:
        - Does NOT commit or roll back.
        - Does NOT provide read-only query methods; those live in selectors/.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    @property
    def session(self) -> Session:
        return self._session
