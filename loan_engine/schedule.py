"""
Amortization Scheduler Module

Produces installment due dates for a loan: installment n falls due n
calendar months after the release date. The schedule is a pure function of
the loan's frozen terms and can be regenerated at any time.

The 70/30 principal/interest split in ``preview_schedule`` is a display
approximation for schedule previews only. Real allocation lives in
``payments.allocate_payment`` and never uses a fixed ratio.
"""

from decimal import Decimal
from datetime import date, datetime, time
from dataclasses import dataclass
from typing import Iterator, List, Union
import calendar

from .money import round_money
from .models import LoanState, LoanTerms

DateLike = Union[date, datetime]

PREVIEW_PRINCIPAL_SHARE = Decimal('0.7')
PREVIEW_INTEREST_SHARE = Decimal('0.3')


@dataclass(frozen=True)
class ScheduleEntry:
    """Single scheduled installment"""
    installment_number: int
    due_date: date
    amount: Decimal


@dataclass(frozen=True)
class PreviewEntry:
    """Display row for a schedule preview (approximate split)"""
    installment_number: int
    due_date: date
    amount: Decimal
    principal: Decimal
    interest: Decimal


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(terms: LoanTerms, installment_number: int) -> date:
    """Due date of installment ``installment_number`` (1-based)"""
    return add_months(terms.release_date, installment_number)


def maturity_date(terms: LoanTerms) -> date:
    """Due date of the final installment"""
    return due_date_for(terms, terms.duration_months)


def as_datetime(value: DateLike, like: DateLike = None) -> datetime:
    """
    Promote a date to midnight so it can be compared with a timestamp.

    When ``like`` is a timezone-aware datetime the result carries the same
    tzinfo.
    """
    if isinstance(value, datetime):
        return value
    tzinfo = like.tzinfo if isinstance(like, datetime) else None
    return datetime.combine(value, time.min, tzinfo=tzinfo)


def to_date(value: DateLike) -> date:
    """Calendar date of a date or timestamp"""
    if isinstance(value, datetime):
        return value.date()
    return value


def iter_schedule(loan: LoanState) -> Iterator[ScheduleEntry]:
    """Lazily yield ``duration_months`` entries in due-date order"""
    for number in range(1, loan.terms.duration_months + 1):
        yield ScheduleEntry(
            installment_number=number,
            due_date=due_date_for(loan.terms, number),
            amount=loan.monthly_installment
        )


def generate_schedule(loan: LoanState) -> List[ScheduleEntry]:
    """
    Generate the full installment schedule.

    Args:
        loan: Loan with frozen terms and monthly installment

    Returns:
        Exactly ``duration_months`` entries with strictly increasing due dates
    """
    return list(iter_schedule(loan))


def preview_schedule(loan: LoanState) -> List[PreviewEntry]:
    """Schedule with the approximate 70/30 split shown on loan previews"""
    preview = []
    for entry in iter_schedule(loan):
        preview.append(PreviewEntry(
            installment_number=entry.installment_number,
            due_date=entry.due_date,
            amount=entry.amount,
            principal=round_money(entry.amount * PREVIEW_PRINCIPAL_SHARE),
            interest=round_money(entry.amount * PREVIEW_INTEREST_SHARE)
        ))
    return preview
