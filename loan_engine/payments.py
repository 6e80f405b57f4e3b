"""
Payment Allocator Module

Splits an incoming loan payment into interest, principal and penalty
portions and computes the new remaining balance.

Allocation order:
    1. Interest, capped at the fixed monthly interest slice
    2. Principal, the rest of the payment
    3. Penalty is reported alongside, evaluated as of the payment timestamp

The remaining balance counts principal and interest only. The full payment
amount reduces it, and the reported penalty is not subtracted a second time.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Iterable, Sequence
import logging

from .money import ZERO, round_money, sum_money, to_decimal, is_positive, is_whole_centavos, Numeric
from .models import LoanState, PaymentRecord, PenaltyPolicy, PaymentType
from .interest import monthly_interest_portion
from .penalties import completed_only, evaluate_penalty, DAYS_PER_OVERDUE_MONTH
from .schedule import DateLike
from .exceptions import InvalidAmount, ExceedsRemainingBalance, InconsistentState

logger = logging.getLogger("loan_engine.payments")


@dataclass(frozen=True)
class PaymentAllocation:
    """Result of allocating one payment"""
    principal: Decimal
    interest: Decimal
    penalty: Decimal
    remaining_balance_before: Decimal
    new_remaining_balance: Decimal

    @property
    def completes_loan(self) -> bool:
        """True when the caller should move the loan to ``completed``"""
        return self.new_remaining_balance == ZERO


def validate_payment_amount(amount: Numeric) -> Decimal:
    """
    Normalise an incoming payment amount.

    Raises:
        InvalidAmount: If amount <= 0 or carries a fraction of a centavo
    """
    amount = to_decimal(amount)
    if not is_positive(amount):
        raise InvalidAmount(f"Payment amount must be positive, got {amount}")
    if not is_whole_centavos(amount):
        raise InvalidAmount(f"Payment amount must be in whole centavos, got {amount}")
    return amount


def paid_principal_and_interest(payments: Iterable[PaymentRecord]) -> Decimal:
    """Principal plus interest settled by completed payments"""
    return sum_money(payment.principal_and_interest for payment in completed_only(payments))


def remaining_balance(loan: LoanState, payments: Iterable[PaymentRecord]) -> Decimal:
    """
    Principal+interest still owed. Penalties never reduce this balance.

    Raises:
        InconsistentState: If completed payments exceed the total payable
    """
    paid = paid_principal_and_interest(payments)
    balance = loan.total_payable - paid

    if balance < 0:
        raise InconsistentState(
            f"Loan {loan.loan_id} has principal+interest paid {paid} "
            f"above total payable {loan.total_payable}"
        )

    return round_money(balance)


def total_paid(payments: Iterable[PaymentRecord]) -> Decimal:
    """Sum of completed payment amounts, penalties included"""
    return round_money(sum_money(payment.amount for payment in completed_only(payments)))


def allocate_payment(
    loan: LoanState,
    completed_payments: Sequence[PaymentRecord],
    policies: Iterable[PenaltyPolicy],
    amount: Numeric,
    as_of: DateLike,
    payment_type: PaymentType = PaymentType.REGULAR,
    overdue_month_days: int = DAYS_PER_OVERDUE_MONTH
) -> PaymentAllocation:
    """
    Allocate an incoming payment.

    Pure computation: nothing is written. When the result's
    ``completes_loan`` is True the caller advances the loan to completed
    inside the same transaction that records the payment.

    Args:
        loan: Loan state with frozen totals
        completed_payments: Payment history (non-completed rows are ignored)
        policies: Penalty policies configured on the loan
        amount: Incoming payment amount
        as_of: Timestamp the payment is posted at
        payment_type: Kind of payment; every type is allocated the same way
        overdue_month_days: Days counted as one month overdue for penalties

    Returns:
        PaymentAllocation

    Raises:
        InvalidAmount: If amount <= 0 or not in whole centavos
        ExceedsRemainingBalance: If amount > remaining balance
        InconsistentState: If stored history contradicts the loan totals
    """
    amount = validate_payment_amount(amount)

    payments = completed_only(completed_payments)
    balance = remaining_balance(loan, payments)

    if amount > balance:
        raise ExceedsRemainingBalance(amount, balance)

    penalty = evaluate_penalty(loan, payments, policies, as_of, overdue_month_days)

    interest_slice = monthly_interest_portion(
        loan.total_payable, loan.terms.principal, loan.terms.duration_months
    )
    interest = min(interest_slice, amount, balance)
    principal = round_money(amount - interest)

    if interest + principal > balance:
        principal = round_money(balance - interest)

    principal = max(ZERO, principal)
    interest = max(ZERO, interest)

    new_balance = round_money(max(ZERO, balance - amount))

    logger.debug(
        f"Allocated {payment_type.value} payment {amount} on loan {loan.loan_id}: "
        f"interest={interest} principal={principal} penalty={penalty} "
        f"balance {balance} -> {new_balance}"
    )

    return PaymentAllocation(
        principal=principal,
        interest=round_money(interest),
        penalty=penalty,
        remaining_balance_before=balance,
        new_remaining_balance=new_balance
    )
