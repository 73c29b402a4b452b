"""
Module: governance_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.
Architecture position: Kernel > Selectors.  May import from db/, models/ and
    domain/ value types.  MUST NOT import from services/.

Invariants enforced:
    - Read-only access: selectors accept a Session from the caller but never
      add, delete, flush or commit.
    - Selectors return frozen DTOs from domain/dtos.py, not ORM instances.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        The caller owns the session and its transaction scope.
    """

    def __init__(self, session: Session):
        self.session = session
