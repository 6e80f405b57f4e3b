"""
Interest Calculator Module

Turns loan terms into total interest, total payable and the monthly
installment, and computes origination fees and the amount actually released
to the borrower. Interest is flat: computed once on the original principal,
never against a declining balance.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Iterable
import logging

from .money import ZERO, round_money, to_decimal
from .models import LoanTerms, LoanFee, InterestMethod, FeeBase
from .exceptions import InvalidTerms

logger = logging.getLogger("loan_engine.interest")

MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')


@dataclass(frozen=True)
class LoanTotals:
    """Figures frozen onto a loan at creation"""
    total_interest: Decimal
    total_payable: Decimal
    monthly_installment: Decimal


def duration_in_months(duration: int, period: str = "months") -> int:
    """
    Normalise a loan duration to months.

    Args:
        duration: Number of periods
        period: "months" or "years"

    Raises:
        InvalidTerms: If the period is unknown or duration is not positive
    """
    if duration < 1:
        raise InvalidTerms(f"Duration must be at least 1, got {duration}")
    if period == "months":
        return int(duration)
    if period == "years":
        return int(duration) * 12
    raise InvalidTerms(f"Unknown duration period: {period}")


def calculate_total_interest(terms: LoanTerms) -> Decimal:
    """Unrounded total interest for the terms"""
    rate = terms.annual_interest_rate / HUNDRED

    if terms.interest_method in (InterestMethod.SIMPLE, InterestMethod.FLAT_ANNUAL):
        return terms.principal * rate * (Decimal(terms.duration_months) / MONTHS_PER_YEAR)
    elif terms.interest_method == InterestMethod.FLAT_ONE_TIME:
        return terms.principal * rate
    else:
        raise InvalidTerms(f"Unsupported interest method: {terms.interest_method}")


def compute_loan_totals(terms: LoanTerms) -> LoanTotals:
    """
    Compute total interest, total payable and monthly installment.

    Rounding happens once per reported figure. The monthly installment is
    an estimate used for scheduling and penalty bases; the last installment
    is not adjusted for rounding drift.

    Args:
        terms: Loan terms

    Returns:
        LoanTotals

    Raises:
        InvalidTerms: If principal <= 0, duration < 1 or rate outside 0-100
    """
    terms.validate()

    total_interest = round_money(calculate_total_interest(terms))
    total_payable = round_money(terms.principal + total_interest)
    monthly_installment = round_money(total_payable / Decimal(terms.duration_months))

    logger.debug(
        f"Loan totals: principal={terms.principal} rate={terms.annual_interest_rate} "
        f"months={terms.duration_months} method={terms.interest_method.value} "
        f"interest={total_interest} payable={total_payable} installment={monthly_installment}"
    )

    return LoanTotals(
        total_interest=total_interest,
        total_payable=total_payable,
        monthly_installment=monthly_installment
    )


def monthly_interest_portion(total_payable: Decimal, principal: Decimal, duration_months: int) -> Decimal:
    """Fixed per-period interest slice of a flat-rate loan"""
    return round_money((to_decimal(total_payable) - to_decimal(principal)) / Decimal(duration_months))


def monthly_principal_portion(principal: Decimal, duration_months: int) -> Decimal:
    """Evenly split per-period principal slice"""
    return round_money(to_decimal(principal) / Decimal(duration_months))


def calculate_fee(fee: LoanFee, principal: Decimal, total_payable: Decimal) -> Decimal:
    """Unrounded amount of a single origination fee"""
    if fee.fee_percentage:
        base = principal if fee.calculate_fee_on == FeeBase.PRINCIPAL else total_payable
        return to_decimal(base) * fee.fee_percentage / HUNDRED
    if fee.fixed_amount:
        return fee.fixed_amount
    return Decimal('0')


def compute_total_fees(fees: Iterable[LoanFee], principal: Decimal, total_payable: Decimal) -> Decimal:
    """Sum of all origination fees, rounded once at the end"""
    total = Decimal('0')
    for fee in fees:
        total += calculate_fee(fee, principal, total_payable)
    return round_money(total)


def compute_released_amount(principal: Decimal, fees: Iterable[LoanFee], total_payable: Decimal) -> Decimal:
    """
    Amount handed to the borrower: principal less origination fees.

    Raises:
        InvalidTerms: If fees consume the whole principal
    """
    principal = to_decimal(principal)
    total_fees = compute_total_fees(fees, principal, total_payable)
    released = round_money(principal - total_fees)

    if released <= ZERO:
        raise InvalidTerms(f"Fees {total_fees} leave nothing to release from principal {principal}")

    return released
