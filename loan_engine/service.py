"""
Loan Service Module

Transactional caller around the calculation engine. Every mutation of a
loan (payment posting, payable generation, status changes) runs under that
loan's lock and inside a single ``storage.atomic()`` block, so a loan's new
payment row, payable updates and status change commit together or not at
all. Different loans use different locks and proceed in parallel.

The engine functions never read a clock; every operation here takes the
timestamp it should evaluate at.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from contextlib import contextmanager
import threading
import uuid

from .money import to_decimal, decimal_from_string, Numeric
from .config import LoanEngineConfig, get_config
from .logging_config import get_logger, log_action
from .models import (
    LoanTerms, LoanState, LoanStatus, LoanFee, PenaltyPolicy, PaymentRecord,
    PaymentStatus, PaymentType, PaymentMethod, PayableRecord
)
from .interest import compute_loan_totals, compute_released_amount
from .schedule import (
    ScheduleEntry, PreviewEntry, DateLike, generate_schedule, preview_schedule, maturity_date,
    to_date
)
from .penalties import evaluate_penalty, next_due_date, completed_only
from .payments import (
    allocate_payment, remaining_balance, paid_principal_and_interest, total_paid
)
from .payables import (
    ReconciliationResult, PayablesSummary, reconcile_payables, apply_payable_payment,
    apply_payment_to_payables, cancel_payable, summarize_payables, is_due_soon
)
from .lifecycle import validate_transition
from .storage import StorageInterface
from .exceptions import LoanEngineError, LoanNotFound, InvalidStatusTransition


@dataclass(frozen=True)
class LoanSummary:
    """Account view of a loan as of a point in time"""
    loan_id: str
    status: LoanStatus
    total_payable: Decimal
    total_paid: Decimal
    principal_and_interest_paid: Decimal
    remaining_balance: Decimal
    accrued_penalty: Decimal
    completed_payment_count: int
    next_due_date: Optional[date]
    maturity_date: Optional[date]


class LoanManager:
    """
    Applies engine results to stored loans, payments and payables
    """

    def __init__(self, storage: StorageInterface, settings: Optional[LoanEngineConfig] = None):
        self.storage = storage
        self.config = settings or get_config()
        self.logger = get_logger("loan_engine.service")

        self.loans_table = "loans"
        self.payments_table = "loan_payments"
        self.penalties_table = "loan_penalties"
        self.fees_table = "loan_fees"
        self.payables_table = "loan_payables"

        # One lock per loan id for the life of the manager; entries are never evicted
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # Locking and transactions

    def _loan_lock(self, loan_id: str) -> threading.Lock:
        with self._locks_guard:
            if loan_id not in self._locks:
                self._locks[loan_id] = threading.Lock()
            return self._locks[loan_id]

    @contextmanager
    def loan_transaction(self, loan_id: str):
        """Serialize work on one loan and make its writes atomic"""
        with self._loan_lock(loan_id):
            with self.storage.atomic():
                yield

    # Loan origination and status

    def create_loan(
        self,
        loan_id: str,
        terms: LoanTerms,
        now: datetime,
        borrower_id: Optional[str] = None,
        penalties: Iterable[PenaltyPolicy] = (),
        fees: Iterable[LoanFee] = ()
    ) -> LoanState:
        """
        Create a pending loan with totals frozen from its terms.

        Args:
            loan_id: Loan identifier
            terms: Loan terms
            now: Creation timestamp
            borrower_id: Borrower the loan belongs to
            penalties: Penalty policies attached to the loan
            fees: Origination fees deducted from the released amount

        Returns:
            Created LoanState

        Raises:
            InvalidTerms: If the terms or fees are invalid
            ValueError: If the loan already exists
        """
        penalties = list(penalties)
        fees = list(fees)

        totals = compute_loan_totals(terms)
        released = compute_released_amount(terms.principal, fees, totals.total_payable)

        loan = LoanState(
            loan_id=loan_id,
            terms=terms,
            total_payable=totals.total_payable,
            monthly_installment=totals.monthly_installment,
            status=LoanStatus.PENDING,
            borrower_id=borrower_id,
            released_amount=released,
            maturity_date=maturity_date(terms),
            created_at=now,
            updated_at=now
        )

        with self.loan_transaction(loan_id):
            if self.storage.exists(self.loans_table, loan_id):
                raise ValueError(f"Loan {loan_id} already exists")

            self._save_loan(loan)
            for index, policy in enumerate(penalties, start=1):
                row = policy.to_dict()
                row['loan_id'] = loan_id
                self.storage.save(self.penalties_table, f"{loan_id}_{index}", row)
            for index, fee in enumerate(fees, start=1):
                row = fee.to_dict()
                row['loan_id'] = loan_id
                self.storage.save(self.fees_table, f"{loan_id}_{index}", row)

        log_action(
            self.logger, "info", "Loan created",
            loan_id=loan_id, action="create_loan", resource="loan",
            extra={
                "principal": str(terms.principal),
                "total_payable": str(loan.total_payable),
                "monthly_installment": str(loan.monthly_installment),
                "released_amount": str(released),
                "penalty_policies": len(penalties),
            }
        )

        return loan

    def approve_loan(self, loan_id: str, now: datetime) -> LoanState:
        return self._change_status(loan_id, LoanStatus.APPROVED, now)

    def activate_loan(self, loan_id: str, now: datetime) -> LoanState:
        return self._change_status(loan_id, LoanStatus.ACTIVE, now)

    def default_loan(self, loan_id: str, now: datetime) -> LoanState:
        return self._change_status(loan_id, LoanStatus.DEFAULTED, now)

    def _change_status(self, loan_id: str, target: LoanStatus, now: datetime) -> LoanState:
        with self.loan_transaction(loan_id):
            loan = self.get_loan(loan_id)
            previous = loan.status
            loan.status = validate_transition(loan.status, target)
            loan.updated_at = now
            self._save_loan(loan)

        log_action(
            self.logger, "info", f"Loan status changed to {target.value}",
            loan_id=loan_id, action="change_status", resource="loan",
            extra={"from": previous.value, "to": target.value}
        )
        return loan

    # Payments

    def post_payment(
        self,
        loan_id: str,
        amount: Numeric,
        as_of: datetime,
        payment_date: Optional[date] = None,
        payment_type: PaymentType = PaymentType.REGULAR,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        reference_number: Optional[str] = None,
        notes: Optional[str] = None,
        payment_id: Optional[str] = None
    ) -> PaymentRecord:
        """
        Allocate and record a completed payment.

        The payment row, the payable updates and a completed status (when
        the balance reaches zero) are written in one transaction.

        Raises:
            LoanNotFound: If the loan does not exist
            InvalidStatusTransition: If the loan is not active
            InvalidAmount: If amount <= 0
            ExceedsRemainingBalance: If amount exceeds the remaining balance
        """
        amount = parse_amount(amount)
        payment_date = payment_date or to_date(as_of)

        try:
            with self.loan_transaction(loan_id):
                loan = self.get_loan(loan_id)
                if not loan.is_active:
                    raise InvalidStatusTransition(
                        f"Loan {loan_id} is {loan.status.value}, not active for payments"
                    )

                payments = self.get_payments(loan_id)
                allocation = allocate_payment(
                    loan, payments, self.get_penalty_policies(loan_id), amount, as_of,
                    payment_type=payment_type,
                    overdue_month_days=self.config.overdue_month_days
                )

                payment = PaymentRecord(
                    payment_id=payment_id or f"PAY-{uuid.uuid4().hex[:8].upper()}",
                    loan_id=loan_id,
                    amount=amount,
                    payment_date=payment_date,
                    status=PaymentStatus.COMPLETED,
                    principal_portion=allocation.principal,
                    interest_portion=allocation.interest,
                    penalty_portion=allocation.penalty,
                    remaining_balance_after=allocation.new_remaining_balance,
                    payment_type=payment_type,
                    payment_method=payment_method,
                    reference_number=reference_number,
                    notes=notes,
                    processed_at=as_of
                )
                self.storage.save(self.payments_table, payment.payment_id, payment.to_dict())

                for payable in apply_payment_to_payables(self.get_payables(loan_id), amount, as_of):
                    self._save_payable(payable)

                if allocation.completes_loan:
                    loan.status = validate_transition(loan.status, LoanStatus.COMPLETED)
                    loan.updated_at = as_of
                    self._save_loan(loan)
        except LoanEngineError as e:
            log_action(
                self.logger, "warning", f"Payment rejected: {e}",
                loan_id=loan_id, action="post_payment", resource="payment",
                extra={"amount": str(amount), "error": type(e).__name__}
            )
            raise

        log_action(
            self.logger, "info", "Payment posted",
            loan_id=loan_id, action="post_payment", resource="payment",
            extra={
                "payment_id": payment.payment_id,
                "amount": str(amount),
                "principal": str(payment.principal_portion),
                "interest": str(payment.interest_portion),
                "penalty": str(payment.penalty_portion),
                "remaining_balance": str(payment.remaining_balance_after),
                "loan_completed": allocation.completes_loan,
            }
        )
        return payment

    # Payables

    def generate_payables(self, as_of: DateLike) -> Dict[str, ReconciliationResult]:
        """
        Reconcile payables for every stored loan.

        Active loans get missing installments materialized; all loans have
        their existing payables refreshed. Each loan is its own transaction.
        """
        results = {}
        for row in self.storage.load_all(self.loans_table):
            results[row['loan_id']] = self.generate_loan_payables(row['loan_id'], as_of)

        created = sum(len(result.new_payables) for result in results.values())
        log_action(
            self.logger, "info", "Payables generated",
            action="generate_payables", resource="payable",
            extra={"loans": len(results), "created": created}
        )
        return results

    def generate_loan_payables(self, loan_id: str, as_of: DateLike) -> ReconciliationResult:
        with self.loan_transaction(loan_id):
            loan = self.get_loan(loan_id)
            result = reconcile_payables(
                loan,
                self.get_payables(loan_id),
                generate_schedule(loan),
                as_of=as_of,
                late_fee_rate=to_decimal(self.config.payable_late_fee_rate),
                discount_rate=to_decimal(self.config.payable_discount_rate)
            )
            for payable in result.new_payables + result.updated_payables:
                self._save_payable(payable)

        if result.new_payables:
            log_action(
                self.logger, "info", "Loan payables materialized",
                loan_id=loan_id, action="generate_payables", resource="payable",
                extra={"installments": [p.installment_number for p in result.new_payables]}
            )
        return result

    def pay_payable(self, payable_id: str, amount: Numeric, as_of: DateLike) -> PayableRecord:
        amount = parse_amount(amount)
        payable = self._require_payable(payable_id)
        with self.loan_transaction(payable.loan_id):
            payable = apply_payable_payment(self._require_payable(payable_id), amount, as_of)
            self._save_payable(payable)

        log_action(
            self.logger, "info", "Payable payment recorded",
            loan_id=payable.loan_id, action="pay_payable", resource="payable",
            extra={"payable_id": payable_id, "amount": str(amount), "status": payable.status.value}
        )
        return payable

    def cancel_payable(self, payable_id: str) -> PayableRecord:
        payable = self._require_payable(payable_id)
        with self.loan_transaction(payable.loan_id):
            payable = cancel_payable(self._require_payable(payable_id))
            self._save_payable(payable)

        log_action(
            self.logger, "info", "Payable cancelled",
            loan_id=payable.loan_id, action="cancel_payable", resource="payable",
            extra={"payable_id": payable_id}
        )
        return payable

    def get_payables_summary(self, loan_id: Optional[str] = None) -> PayablesSummary:
        if loan_id:
            payables = self.get_payables(loan_id)
        else:
            payables = [PayableRecord.from_dict(row) for row in self.storage.load_all(self.payables_table)]
        return summarize_payables(payables)

    def get_due_soon_payables(self, as_of: DateLike) -> List[PayableRecord]:
        payables = [PayableRecord.from_dict(row) for row in self.storage.load_all(self.payables_table)]
        due_soon = [p for p in payables if is_due_soon(p, as_of, self.config.due_soon_days)]
        due_soon.sort(key=lambda p: p.due_date)
        return due_soon

    # Read side

    def get_loan(self, loan_id: str) -> LoanState:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return LoanState.from_dict(data)

    def get_payments(self, loan_id: str) -> List[PaymentRecord]:
        """Payment history for a loan, oldest first"""
        rows = self.storage.find(self.payments_table, {"loan_id": loan_id})
        payments = [PaymentRecord.from_dict(row) for row in rows]
        payments.sort(key=lambda p: (p.payment_date, p.processed_at.isoformat() if p.processed_at else ""))
        return payments

    def get_penalty_policies(self, loan_id: str) -> List[PenaltyPolicy]:
        rows = self.storage.find(self.penalties_table, {"loan_id": loan_id})
        return [
            PenaltyPolicy.from_dict(
                row,
                default_grace_period_days=self.config.default_grace_period_days,
                default_rate=to_decimal(self.config.default_penalty_rate)
            )
            for row in rows
        ]

    def get_fees(self, loan_id: str) -> List[LoanFee]:
        rows = self.storage.find(self.fees_table, {"loan_id": loan_id})
        return [LoanFee.from_dict(row) for row in rows]

    def get_payables(self, loan_id: str) -> List[PayableRecord]:
        rows = self.storage.find(self.payables_table, {"loan_id": loan_id})
        payables = [PayableRecord.from_dict(row) for row in rows]
        payables.sort(key=lambda p: p.installment_number)
        return payables

    def get_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        return generate_schedule(self.get_loan(loan_id))

    def preview_schedule(self, loan_id: str) -> List[PreviewEntry]:
        return preview_schedule(self.get_loan(loan_id))

    def get_loan_summary(self, loan_id: str, as_of: DateLike) -> LoanSummary:
        loan = self.get_loan(loan_id)
        payments = completed_only(self.get_payments(loan_id))
        balance = remaining_balance(loan, payments)

        penalty = Decimal('0.00')
        upcoming = None
        if loan.status not in (LoanStatus.COMPLETED, LoanStatus.DEFAULTED):
            upcoming = next_due_date(loan, payments)
            penalty = evaluate_penalty(
                loan, payments, self.get_penalty_policies(loan_id), as_of,
                self.config.overdue_month_days
            )

        return LoanSummary(
            loan_id=loan_id,
            status=loan.status,
            total_payable=loan.total_payable,
            total_paid=total_paid(payments),
            principal_and_interest_paid=paid_principal_and_interest(payments),
            remaining_balance=balance,
            accrued_penalty=penalty,
            completed_payment_count=len(payments),
            next_due_date=upcoming,
            maturity_date=loan.maturity_date
        )

    # Persistence helpers

    def _require_payable(self, payable_id: str) -> PayableRecord:
        data = self.storage.load(self.payables_table, payable_id)
        if not data:
            raise ValueError(f"Payable {payable_id} not found")
        return PayableRecord.from_dict(data)

    def _save_loan(self, loan: LoanState) -> None:
        self.storage.save(self.loans_table, loan.loan_id, loan.to_dict())

    def _save_payable(self, payable: PayableRecord) -> None:
        self.storage.save(self.payables_table, payable.payable_id, payable.to_dict())


def parse_amount(value: Numeric) -> Decimal:
    """Amount entered at the cashier, e.g. ``"₱9,333.33"``, or a numeric value"""
    if isinstance(value, str):
        return decimal_from_string(value)
    return to_decimal(value)
