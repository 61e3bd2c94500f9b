"""
Module: erp_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.
    Selectors are the query side of the kernel: structured read access to
    both ledgers without mutation capability.
Architecture position: Kernel > Selectors.  May import from models/, the
    pure domain/ layer and the record mappers of services/.

Invariants enforced:
    - Read-only access: selectors MUST NOT call session.add(),
      session.delete(), session.commit(), or session.flush().
    - DTO return convention: selectors return frozen dataclasses, never ORM
      instances.
    - Session ownership: the caller owns the session and its transaction.

Failure modes:
    - NotFoundError when a lookup by id finds nothing.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from erp_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a Session from the caller, perform read-only
        queries, and return DTOs or computed results.

    Non-goals:
        - Decimal filtering and aggregation in SQL.  Decimal columns are text
          on SQLite, so sums and comparisons happen in Python.
    """

    def __init__(self, session: Session):
        self.session = session
