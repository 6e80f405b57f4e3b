"""
Payable Generator Module

Materializes a loan's installment schedule into payable records exactly
once per (loan, installment number) and recomputes the status, late fee and
early-payment discount of every existing payable.

Reconciliation is a pure function of its inputs: it returns new and updated
records and leaves persisting them to the caller, so running it twice over
the same stored state creates nothing the second time. Loans never share
state, so different loans can be reconciled in parallel.
"""

from decimal import Decimal
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence
import logging

from .money import ZERO, round_money, sum_money, to_decimal, Numeric
from .models import LoanState, PayableRecord, PayableStatus
from .interest import monthly_interest_portion, monthly_principal_portion
from .schedule import ScheduleEntry, DateLike, generate_schedule, to_date
from .payments import validate_payment_amount
from .exceptions import ExceedsRemainingBalance, InconsistentState, InvalidStatusTransition

logger = logging.getLogger("loan_engine.payables")

HUNDRED = Decimal('100')
DAYS_PER_YEAR = Decimal('365')
DUE_SOON_DAYS = 7


@dataclass
class ReconciliationResult:
    """Outcome of reconciling one loan's payables"""
    loan_id: str
    new_payables: List[PayableRecord] = field(default_factory=list)
    updated_payables: List[PayableRecord] = field(default_factory=list)

    @property
    def updated_statuses(self) -> Dict[int, PayableStatus]:
        """Installment number -> recomputed status for existing payables"""
        return {payable.installment_number: payable.status for payable in self.updated_payables}


@dataclass(frozen=True)
class PayablesSummary:
    total_payables: Decimal      # Excludes cancelled
    total_paid: Decimal
    total_outstanding: Decimal   # Excludes paid and cancelled
    open_count: int
    paid_count: int
    overdue_count: int


def payable_id_for(loan_id: str, installment_number: int) -> str:
    """Deterministic payable id; the same installment always maps to the same id"""
    return f"{loan_id}_{installment_number}"


def remaining_amount(payable: PayableRecord) -> Decimal:
    return round_money(max(ZERO, payable.amount_due - payable.amount_paid))


def payable_status(payable: PayableRecord, as_of: DateLike) -> PayableStatus:
    """
    Status of a payable as of a date.

    paid when fully covered, overdue when the due date has passed without
    full payment, partial when something was paid, pending otherwise.
    Cancelled payables keep their status.
    """
    if payable.status == PayableStatus.CANCELLED:
        return PayableStatus.CANCELLED

    today = to_date(as_of)
    if payable.amount_paid >= payable.amount_due:
        return PayableStatus.PAID
    if payable.due_date < today:
        return PayableStatus.OVERDUE
    if payable.amount_paid > 0:
        return PayableStatus.PARTIAL
    return PayableStatus.PENDING


def days_until_due(payable: PayableRecord, as_of: DateLike) -> int:
    """Days until the due date (negative once past due)"""
    return (payable.due_date - to_date(as_of)).days


def overdue_days(payable: PayableRecord, as_of: DateLike) -> int:
    if payable_status(payable, as_of) != PayableStatus.OVERDUE:
        return 0
    return -days_until_due(payable, as_of)


def is_due_soon(payable: PayableRecord, as_of: DateLike, window_days: int = DUE_SOON_DAYS) -> bool:
    if payable.status in (PayableStatus.PAID, PayableStatus.CANCELLED):
        return False
    days = days_until_due(payable, as_of)
    return 0 <= days <= window_days


def calculate_late_fee(payable: PayableRecord, as_of: DateLike) -> Decimal:
    """Annual late fee rate accrued daily on the unpaid remainder"""
    days = overdue_days(payable, as_of)
    if days == 0 or payable.late_fee_rate <= 0:
        return ZERO

    daily_rate = payable.late_fee_rate / HUNDRED / DAYS_PER_YEAR
    return round_money(remaining_amount(payable) * daily_rate * Decimal(days))


def calculate_early_payment_discount(payable: PayableRecord, as_of: DateLike) -> Decimal:
    if payable.discount_rate <= 0 or payable_status(payable, as_of) == PayableStatus.OVERDUE:
        return ZERO
    return round_money(payable.amount_due * payable.discount_rate / HUNDRED)


def refresh_payable(payable: PayableRecord, as_of: DateLike) -> PayableRecord:
    """Copy of ``payable`` with remaining amount, status and accruals recomputed"""
    if payable.status == PayableStatus.CANCELLED:
        return payable

    return replace(
        payable,
        remaining_amount=remaining_amount(payable),
        status=payable_status(payable, as_of),
        late_fee_accrued=calculate_late_fee(payable, as_of),
        discount_accrued=calculate_early_payment_discount(payable, as_of)
    )


def build_payable(loan: LoanState, entry: ScheduleEntry,
                  late_fee_rate: Numeric = ZERO,
                  discount_rate: Numeric = ZERO) -> PayableRecord:
    """New pending payable for one scheduled installment"""
    return PayableRecord(
        payable_id=payable_id_for(loan.loan_id, entry.installment_number),
        loan_id=loan.loan_id,
        installment_number=entry.installment_number,
        due_date=entry.due_date,
        principal_component=monthly_principal_portion(loan.terms.principal, loan.terms.duration_months),
        interest_component=monthly_interest_portion(
            loan.total_payable, loan.terms.principal, loan.terms.duration_months
        ),
        amount_due=loan.monthly_installment,
        amount_paid=ZERO,
        late_fee_rate=to_decimal(late_fee_rate),
        discount_rate=to_decimal(discount_rate),
        status=PayableStatus.PENDING
    )


def _index_existing(loan: LoanState, existing: Iterable[PayableRecord]) -> Dict[int, PayableRecord]:
    indexed: Dict[int, PayableRecord] = {}
    for payable in existing:
        if payable.loan_id != loan.loan_id:
            raise InconsistentState(
                f"Payable {payable.payable_id} belongs to loan {payable.loan_id}, not {loan.loan_id}"
            )
        if not 1 <= payable.installment_number <= loan.terms.duration_months:
            raise InconsistentState(
                f"Payable {payable.payable_id} has installment {payable.installment_number} "
                f"outside schedule of {loan.terms.duration_months}"
            )
        if payable.installment_number in indexed:
            raise InconsistentState(
                f"Loan {loan.loan_id} has duplicate payables for installment {payable.installment_number}"
            )
        indexed[payable.installment_number] = payable
    return indexed


def reconcile_payables(
    loan: LoanState,
    existing_payables: Iterable[PayableRecord],
    schedule: Optional[Sequence[ScheduleEntry]] = None,
    as_of: DateLike = None,
    late_fee_rate: Numeric = ZERO,
    discount_rate: Numeric = ZERO
) -> ReconciliationResult:
    """
    Materialize missing installment payables and refresh existing ones.

    Only active loans get new payables. Existing payables are refreshed
    regardless of loan status.

    Args:
        loan: Loan state with frozen totals
        existing_payables: Payables already stored for this loan
        schedule: Installment schedule (generated from the loan when None)
        as_of: Date used for overdue checks and accruals
        late_fee_rate: Annual late fee percent stamped on new payables
        discount_rate: Early payment discount percent stamped on new payables

    Returns:
        ReconciliationResult with new and refreshed payables

    Raises:
        InconsistentState: If stored payables do not fit the loan's schedule
    """
    if as_of is None:
        raise ValueError("as_of is required for payable reconciliation")

    indexed = _index_existing(loan, existing_payables)
    result = ReconciliationResult(loan_id=loan.loan_id)

    for number in sorted(indexed):
        result.updated_payables.append(refresh_payable(indexed[number], as_of))

    if not loan.is_active:
        return result

    if schedule is None:
        schedule = generate_schedule(loan)

    for entry in schedule:
        if entry.installment_number in indexed:
            continue
        payable = build_payable(loan, entry, late_fee_rate, discount_rate)
        result.new_payables.append(refresh_payable(payable, as_of))

    if result.new_payables:
        logger.debug(f"Loan {loan.loan_id}: materialized {len(result.new_payables)} payables")

    return result


def apply_payable_payment(payable: PayableRecord, amount: Numeric, as_of: DateLike) -> PayableRecord:
    """
    Record a payment against one payable.

    Raises:
        InvalidAmount: If amount <= 0 or not in whole centavos
        ExceedsRemainingBalance: If amount exceeds the payable's remainder
        InvalidStatusTransition: If the payable is cancelled
    """
    amount = validate_payment_amount(amount)
    if payable.status == PayableStatus.CANCELLED:
        raise InvalidStatusTransition(f"Payable {payable.payable_id} is cancelled")

    remaining = remaining_amount(payable)
    if amount > remaining:
        raise ExceedsRemainingBalance(amount, remaining)

    return refresh_payable(replace(payable, amount_paid=payable.amount_paid + amount), as_of)


def apply_payment_to_payables(payables: Iterable[PayableRecord], amount: Numeric,
                              as_of: DateLike) -> List[PayableRecord]:
    """
    Spread a loan payment over open payables, oldest installment first.

    Returns only the payables that received money. Any amount left once
    every open payable is covered stays unassigned.
    """
    amount = validate_payment_amount(amount)

    updated = []
    for payable in sorted(payables, key=lambda p: p.installment_number):
        if amount <= 0:
            break
        if payable.status in (PayableStatus.PAID, PayableStatus.CANCELLED):
            continue

        remaining = remaining_amount(payable)
        if remaining <= 0:
            continue

        portion = min(amount, remaining)
        updated.append(apply_payable_payment(payable, portion, as_of))
        amount -= portion

    return updated


def cancel_payable(payable: PayableRecord) -> PayableRecord:
    """
    Raises:
        InvalidStatusTransition: If anything has been paid on the payable
    """
    if payable.amount_paid > 0:
        raise InvalidStatusTransition(
            f"Cannot cancel payable {payable.payable_id}: {payable.amount_paid} already paid"
        )
    return replace(payable, status=PayableStatus.CANCELLED)


def summarize_payables(payables: Iterable[PayableRecord]) -> PayablesSummary:
    """Totals for a set of payables as last reconciled"""
    payables = list(payables)
    live = [p for p in payables if p.status != PayableStatus.CANCELLED]
    open_payables = [p for p in live if p.status != PayableStatus.PAID]

    return PayablesSummary(
        total_payables=round_money(sum_money(p.amount_due for p in live)),
        total_paid=round_money(sum_money(p.amount_paid for p in payables)),
        total_outstanding=round_money(sum_money(p.remaining_amount for p in open_payables)),
        open_count=len(open_payables),
        paid_count=len([p for p in live if p.status == PayableStatus.PAID]),
        overdue_count=len([p for p in live if p.status == PayableStatus.OVERDUE])
    )
