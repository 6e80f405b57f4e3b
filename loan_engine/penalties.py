"""
Penalty Evaluator Module

Computes the late-payment penalty accrued on a loan as of an injected
``as_of`` timestamp. Penalty accrues against the single next unpaid
installment, whose number is the count of completed payments plus one.
Every active policy on the loan contributes independently and the
contributions are summed without a cap.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Iterable, List, Sequence
import logging
import math

from .money import ZERO, round_money, sum_money
from .models import (
    LoanState, PaymentRecord, PenaltyPolicy, PenaltyType, PenaltyBase
)
from .schedule import DateLike, as_datetime, due_date_for
from .exceptions import InconsistentState

logger = logging.getLogger("loan_engine.penalties")

HUNDRED = Decimal('100')
DAYS_PER_OVERDUE_MONTH = 30


@dataclass(frozen=True)
class PenaltyAssessment:
    """Contribution of one policy to the accrued penalty"""
    policy: PenaltyPolicy
    grace_end: date
    days_overdue: int
    months_overdue: int
    amount: Decimal


def completed_only(payments: Iterable[PaymentRecord]) -> List[PaymentRecord]:
    """Filter a payment history down to completed rows"""
    return [payment for payment in payments if payment.is_completed]


def next_installment_number(loan: LoanState, payments: Sequence[PaymentRecord]) -> int:
    """
    Installment the next payment is expected to settle.

    Raises:
        InconsistentState: If there are more completed payments than installments
    """
    count = len(completed_only(payments))
    if count > loan.terms.duration_months:
        raise InconsistentState(
            f"Loan {loan.loan_id} has {count} completed payments but only "
            f"{loan.terms.duration_months} installments"
        )
    return count + 1


def next_due_date(loan: LoanState, payments: Sequence[PaymentRecord]) -> date:
    return due_date_for(loan.terms, next_installment_number(loan, payments))


def penalty_base_amount(loan: LoanState, payments: Sequence[PaymentRecord],
                        base: PenaltyBase) -> Decimal:
    """
    Amount a percentage penalty is computed against.

    The remaining-balance base subtracts full payment amounts (penalties
    included), unlike the allocator's principal+interest balance.
    """
    if base == PenaltyBase.PRINCIPAL:
        return loan.terms.principal
    elif base == PenaltyBase.REMAINING_BALANCE:
        paid = sum_money(payment.amount for payment in completed_only(payments))
        remaining = loan.total_payable - paid
        if remaining < 0:
            raise InconsistentState(
                f"Loan {loan.loan_id} has been paid {paid}, more than total payable {loan.total_payable}"
            )
        return remaining
    elif base == PenaltyBase.MONTHLY_INSTALLMENT:
        return loan.monthly_installment
    else:
        raise ValueError(f"Unsupported penalty calculation base: {base}")


def assess_penalties(
    loan: LoanState,
    completed_payments: Sequence[PaymentRecord],
    policies: Iterable[PenaltyPolicy],
    as_of: DateLike,
    overdue_month_days: int = DAYS_PER_OVERDUE_MONTH
) -> List[PenaltyAssessment]:
    """
    Per-policy penalty breakdown as of ``as_of``.

    Args:
        loan: Loan state with frozen totals
        completed_payments: Payment history (non-completed rows are ignored)
        policies: Penalty policies configured on the loan
        as_of: Evaluation timestamp or date
        overdue_month_days: Days counted as one month overdue

    Returns:
        One assessment per policy whose type is not ``none``; empty when
        nothing is overdue yet
    """
    payments = completed_only(completed_payments)
    due = next_due_date(loan, payments)
    now = as_datetime(as_of)

    if now <= as_datetime(due, like=now):
        return []

    assessments = []
    for policy in policies:
        if policy.penalty_type == PenaltyType.NONE:
            continue

        grace_end = due + timedelta(days=policy.grace_period_days)
        grace_end_at = as_datetime(grace_end, like=now)

        if now <= grace_end_at:
            assessments.append(PenaltyAssessment(
                policy=policy, grace_end=grace_end,
                days_overdue=0, months_overdue=0, amount=ZERO
            ))
            continue

        days_overdue = (now - grace_end_at).days
        months_overdue = 0

        if policy.penalty_type == PenaltyType.FIXED:
            amount = round_money(policy.rate)
        else:
            months_overdue = max(1, math.ceil(days_overdue / overdue_month_days))
            base = penalty_base_amount(loan, payments, policy.calculation_base)
            amount = round_money(base * (policy.rate / HUNDRED) * Decimal(months_overdue))

        assessments.append(PenaltyAssessment(
            policy=policy,
            grace_end=grace_end,
            days_overdue=days_overdue,
            months_overdue=months_overdue,
            amount=amount
        ))

    return assessments


def evaluate_penalty(
    loan: LoanState,
    completed_payments: Sequence[PaymentRecord],
    policies: Iterable[PenaltyPolicy],
    as_of: DateLike,
    overdue_month_days: int = DAYS_PER_OVERDUE_MONTH
) -> Decimal:
    """
    Total penalty accrued as of ``as_of`` (always >= 0).

    Returns 0 while ``as_of`` is on or before the next due date, and a
    policy contributes 0 while ``as_of`` is within its grace period.
    """
    assessments = assess_penalties(
        loan, completed_payments, policies, as_of, overdue_month_days
    )
    total = sum_money(assessment.amount for assessment in assessments)

    if total > 0:
        logger.debug(f"Loan {loan.loan_id} accrued penalty {total} from {len(assessments)} policies")

    return round_money(total)
