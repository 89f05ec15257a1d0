"""
Module: settlement_kernel.selectors.base
Responsibility: Base class for read-only query selectors.
Architecture position: Kernel > Selectors.  May import from db/, models/ and
    domain DTOs.  Selectors never add, flush, delete or commit; the caller
    owns the session and its transaction scope.  They return DTOs, not ORM
    instances.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    def __init__(self, session: Session):
        self.session = session
