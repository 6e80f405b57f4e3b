"""Exception hierarchy for the loan calculation engine.

All engine errors subclass ``ValueError`` so callers that already guard
with ``except ValueError`` keep working.
"""

from decimal import Decimal


class LoanEngineError(ValueError):
    """Base exception for all engine errors."""


class InvalidTerms(LoanEngineError):
    """Raised when loan terms (principal, rate, duration, fees) are invalid."""


class InvalidAmount(LoanEngineError):
    """Raised when a payment amount is zero or negative."""


class ExceedsRemainingBalance(LoanEngineError):
    """Raised when a payment is larger than what is still owed."""

    def __init__(self, amount: Decimal, remaining_balance: Decimal):
        self.amount = amount
        self.remaining_balance = remaining_balance
        super().__init__(
            f"Payment amount {amount} exceeds remaining balance {remaining_balance}"
        )


class InconsistentState(LoanEngineError):
    """Raised when stored loan data contradicts itself (upstream integrity bug)."""


class InvalidStatusTransition(LoanEngineError):
    """Raised when a loan or payable status change is not allowed."""


class LoanNotFound(LoanEngineError):
    """Raised when a referenced loan does not exist."""
