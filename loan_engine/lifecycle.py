"""
Loan Lifecycle Module

Forward-only status machine for loans:

    pending -> approved -> active -> completed
                    \\          \\
                     +----------+--> defaulted

Completion is reached only through payment posting once the remaining
balance hits zero. Defaulting is an explicit external decision.
"""

from typing import Dict, FrozenSet

from .models import LoanStatus
from .exceptions import InvalidStatusTransition

ALLOWED_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.ACTIVE}),
    LoanStatus.APPROVED: frozenset({LoanStatus.ACTIVE, LoanStatus.DEFAULTED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED}),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.DEFAULTED: frozenset(),
}


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(current: LoanStatus, target: LoanStatus) -> LoanStatus:
    """
    Check that a loan may move from ``current`` to ``target``.

    Returns:
        The target status

    Raises:
        InvalidStatusTransition: For backward, repeated or skipped moves
    """
    if not can_transition(current, target):
        raise InvalidStatusTransition(
            f"Loan status cannot change from {current.value} to {target.value}"
        )
    return target


def is_terminal(status: LoanStatus) -> bool:
    return not ALLOWED_TRANSITIONS[status]
