"""
Module: branch_kernel.selectors.base
Responsibility: Base class for read-only query selectors.  Selectors are the
    read side of the kernel: tally, history, status polling.
Architecture position: Kernel > Selectors.  May import from db/, models/ and
    domain value types.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: selectors never add, delete, flush or commit.
    - DTO return convention: selectors return frozen dataclasses, not ORM
      instances.
    - Session ownership: the caller owns the session and its transaction.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        Accept a Session from the caller, perform read-only queries, return
        DTOs.  Never mutate.
    """

    def __init__(self, session: Session):
        self.session = session
