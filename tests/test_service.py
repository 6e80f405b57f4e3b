"""
Integration tests for the loan service

Exercises origination, status changes, payment posting, payable generation
and the all-or-nothing guarantee of each loan transaction against the
in-memory storage backend.
"""

import threading
import pytest
from decimal import Decimal
from datetime import date, datetime

from loan_engine.config import LoanEngineConfig
from loan_engine.storage import InMemoryStorage
from loan_engine.models import (
    LoanTerms, LoanStatus, InterestMethod, LoanFee, PenaltyPolicy, PenaltyType,
    PaymentMethod, PayableStatus
)
from loan_engine.service import LoanManager
from loan_engine.exceptions import (
    InvalidTerms, InvalidAmount, ExceedsRemainingBalance, InvalidStatusTransition, LoanNotFound
)


CREATED_AT = datetime(2025, 1, 10, 9, 0)


def make_terms(principal="100000", months=12):
    return LoanTerms(
        principal=Decimal(principal),
        annual_interest_rate=Decimal('12'),
        duration_months=months,
        interest_method=InterestMethod.FLAT_ANNUAL,
        release_date=date(2025, 1, 15)
    )


class TestLoanOrigination:
    """Test loan creation and status changes"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.manager = LoanManager(self.storage, LoanEngineConfig())

    def test_create_loan_freezes_totals(self):
        loan = self.manager.create_loan(
            "LN-1", make_terms(), CREATED_AT, borrower_id="BR-1",
            penalties=[PenaltyPolicy(penalty_type=PenaltyType.FIXED, rate=Decimal('500'))],
            fees=[LoanFee(fee_type="processing", fee_percentage=Decimal('2'))]
        )

        assert loan.status == LoanStatus.PENDING
        assert loan.total_payable == Decimal('112000.00')
        assert loan.monthly_installment == Decimal('9333.33')
        assert loan.released_amount == Decimal('98000.00')
        assert loan.maturity_date == date(2026, 1, 15)

        stored = self.manager.get_loan("LN-1")
        assert stored == loan
        assert len(self.manager.get_penalty_policies("LN-1")) == 1
        assert self.manager.get_fees("LN-1")[0].fee_percentage == Decimal('2')

    def test_duplicate_loan_rejected(self):
        self.manager.create_loan("LN-1", make_terms(), CREATED_AT)

        with pytest.raises(ValueError, match="already exists"):
            self.manager.create_loan("LN-1", make_terms(principal="5000"), CREATED_AT)

        assert self.manager.get_loan("LN-1").terms.principal == Decimal('100000')

    def test_invalid_terms_store_nothing(self):
        with pytest.raises(InvalidTerms):
            self.manager.create_loan("LN-1", make_terms(principal="0"), CREATED_AT)

        assert self.storage.count("loans") == 0

    def test_missing_loan(self):
        with pytest.raises(LoanNotFound):
            self.manager.get_loan("LN-404")

    def test_status_flow(self):
        self.manager.create_loan("LN-1", make_terms(), CREATED_AT)

        approved = self.manager.approve_loan("LN-1", datetime(2025, 1, 12))
        active = self.manager.activate_loan("LN-1", datetime(2025, 1, 15))

        assert approved.status == LoanStatus.APPROVED
        assert active.status == LoanStatus.ACTIVE
        assert self.manager.get_loan("LN-1").updated_at == datetime(2025, 1, 15)

    def test_backward_transition_rejected(self):
        self.manager.create_loan("LN-1", make_terms(), CREATED_AT)
        self.manager.activate_loan("LN-1", datetime(2025, 1, 15))

        with pytest.raises(InvalidStatusTransition):
            self.manager.approve_loan("LN-1", datetime(2025, 1, 16))

        assert self.manager.get_loan("LN-1").status == LoanStatus.ACTIVE

    def test_default_loan(self):
        self.manager.create_loan("LN-1", make_terms(), CREATED_AT)
        self.manager.activate_loan("LN-1", datetime(2025, 1, 15))

        assert self.manager.default_loan("LN-1", datetime(2025, 6, 1)).status == LoanStatus.DEFAULTED

    def test_schedule_views(self):
        self.manager.create_loan("LN-1", make_terms(), CREATED_AT)

        assert len(self.manager.get_schedule("LN-1")) == 12
        assert self.manager.preview_schedule("LN-1")[0].principal == Decimal('6533.33')

    def test_penalty_defaults_from_config(self):
        manager = LoanManager(self.storage, LoanEngineConfig(default_grace_period_days=3,
                                                             default_penalty_rate="1.5"))
        self.storage.save("loan_penalties", "LN-1_1", {
            "loan_id": "LN-1", "penalty_type": "percentage",
            "rate": None, "grace_period_days": None
        })

        policy = manager.get_penalty_policies("LN-1")[0]

        assert policy.grace_period_days == 3
        assert policy.rate == Decimal('1.5')


class TestPostPayment:
    """Test payment posting through the service"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.manager = LoanManager(self.storage, LoanEngineConfig())
        self.manager.create_loan(
            "LN-1", make_terms(), CREATED_AT,
            penalties=[PenaltyPolicy(penalty_type=PenaltyType.FIXED, rate=Decimal('500'))]
        )
        self.manager.activate_loan("LN-1", datetime(2025, 1, 15))

    def test_regular_payment(self):
        payment = self.manager.post_payment(
            "LN-1", Decimal('9333.33'), datetime(2025, 2, 10, 10, 0),
            payment_method=PaymentMethod.GCASH, reference_number="GC-001", payment_id="PAY-1"
        )

        assert payment.payment_id == "PAY-1"
        assert payment.payment_date == date(2025, 2, 10)
        assert payment.interest_portion == Decimal('1000.00')
        assert payment.principal_portion == Decimal('8333.33')
        assert payment.penalty_portion == Decimal('0.00')
        assert payment.remaining_balance_after == Decimal('102666.67')
        assert self.manager.get_payments("LN-1") == [payment]

    def test_late_payment_reports_penalty(self):
        payment = self.manager.post_payment("LN-1", "9833.33", datetime(2025, 3, 1, 9, 0))

        assert payment.penalty_portion == Decimal('500.00')
        assert payment.remaining_balance_after == Decimal('102166.67')

    def test_generated_payment_id(self):
        payment = self.manager.post_payment("LN-1", "100", datetime(2025, 2, 10))
        assert payment.payment_id.startswith("PAY-")

    def test_payoff_completes_loan(self):
        payment = self.manager.post_payment("LN-1", "112000.00", datetime(2025, 2, 10))

        assert payment.remaining_balance_after == Decimal('0.00')
        assert self.manager.get_loan("LN-1").status == LoanStatus.COMPLETED

        with pytest.raises(InvalidStatusTransition):
            self.manager.post_payment("LN-1", "1", datetime(2025, 2, 11))

    def test_exceeding_payment_stores_nothing(self):
        with pytest.raises(ExceedsRemainingBalance):
            self.manager.post_payment("LN-1", "150000", datetime(2025, 2, 10))

        assert self.manager.get_payments("LN-1") == []

    def test_invalid_amount(self):
        with pytest.raises(InvalidAmount):
            self.manager.post_payment("LN-1", "0", datetime(2025, 2, 10))

    def test_fraction_of_centavo_leaves_loan_payable(self):
        with pytest.raises(InvalidAmount, match="whole centavos"):
            self.manager.post_payment("LN-1", Decimal('111999.995'), datetime(2025, 2, 10))

        assert self.manager.get_payments("LN-1") == []
        assert self.manager.get_loan("LN-1").status == LoanStatus.ACTIVE

        self.manager.post_payment("LN-1", Decimal('111999.99'), datetime(2025, 2, 10))
        summary = self.manager.get_loan_summary("LN-1", datetime(2025, 2, 10))
        assert summary.remaining_balance == self.manager.get_payments("LN-1")[-1].remaining_balance_after

        self.manager.post_payment("LN-1", Decimal('0.01'), datetime(2025, 2, 11))
        assert self.manager.get_loan("LN-1").status == LoanStatus.COMPLETED

    def test_cashier_entered_amount(self):
        payment = self.manager.post_payment("LN-1", "₱9,333.33", datetime(2025, 2, 10))

        assert payment.amount == Decimal('9333.33')
        assert payment.remaining_balance_after == Decimal('102666.67')

    def test_pending_loan_rejects_payment(self):
        self.manager.create_loan("LN-2", make_terms(), CREATED_AT)

        with pytest.raises(InvalidStatusTransition):
            self.manager.post_payment("LN-2", "9333.33", datetime(2025, 2, 10))

        assert self.manager.get_payments("LN-2") == []

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFound):
            self.manager.post_payment("LN-404", "10", datetime(2025, 2, 10))

    def test_payment_settles_payables(self):
        self.manager.generate_payables(date(2025, 1, 20))

        self.manager.post_payment("LN-1", "10000", datetime(2025, 2, 10))
        payables = self.manager.get_payables("LN-1")

        assert payables[0].status == PayableStatus.PAID
        assert payables[1].amount_paid == Decimal('666.67')
        assert payables[1].status == PayableStatus.PARTIAL

    def test_failure_rolls_back_whole_payment(self, monkeypatch):
        self.manager.generate_payables(date(2025, 1, 20))

        def broken_save(payable):
            raise RuntimeError("disk full")

        monkeypatch.setattr(self.manager, "_save_payable", broken_save)

        with pytest.raises(RuntimeError):
            self.manager.post_payment("LN-1", "112000.00", datetime(2025, 2, 10))

        assert self.manager.get_payments("LN-1") == []
        assert self.manager.get_loan("LN-1").status == LoanStatus.ACTIVE

    def test_concurrent_payments_are_serialized(self):
        """Twelve simultaneous installments each see the previous balance"""
        errors = []

        def pay(number):
            try:
                self.manager.post_payment(
                    "LN-1", "9333.33", datetime(2025, 2, 10), payment_id=f"PAY-{number:02d}"
                )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=pay, args=(n,)) for n in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        balances = sorted(p.remaining_balance_after for p in self.manager.get_payments("LN-1"))
        expected = sorted(Decimal('112000.00') - Decimal('9333.33') * k for k in range(1, 13))
        assert balances == expected

        summary = self.manager.get_loan_summary("LN-1", datetime(2025, 2, 10))
        assert summary.remaining_balance == Decimal('0.04')
        assert summary.completed_payment_count == 12


class TestLoanSummary:

    def setup_method(self):
        self.manager = LoanManager(InMemoryStorage(), LoanEngineConfig())
        self.manager.create_loan(
            "LN-1", make_terms(), CREATED_AT,
            penalties=[PenaltyPolicy(penalty_type=PenaltyType.FIXED, rate=Decimal('500'))]
        )
        self.manager.activate_loan("LN-1", datetime(2025, 1, 15))

    def test_overdue_loan(self):
        summary = self.manager.get_loan_summary("LN-1", datetime(2025, 3, 1))

        assert summary.status == LoanStatus.ACTIVE
        assert summary.remaining_balance == Decimal('112000.00')
        assert summary.accrued_penalty == Decimal('500.00')
        assert summary.next_due_date == date(2025, 2, 15)
        assert summary.maturity_date == date(2026, 1, 15)

    def test_after_payment(self):
        self.manager.post_payment("LN-1", "9833.33", datetime(2025, 3, 1))
        summary = self.manager.get_loan_summary("LN-1", datetime(2025, 3, 1))

        assert summary.total_paid == Decimal('9833.33')
        assert summary.principal_and_interest_paid == Decimal('9833.33')
        assert summary.remaining_balance == Decimal('102166.67')
        assert summary.accrued_penalty == Decimal('0.00')
        assert summary.next_due_date == date(2025, 3, 15)

    def test_completed_loan_has_no_next_due(self):
        self.manager.post_payment("LN-1", "112000.00", datetime(2025, 2, 10))
        summary = self.manager.get_loan_summary("LN-1", datetime(2025, 6, 1))

        assert summary.status == LoanStatus.COMPLETED
        assert summary.next_due_date is None
        assert summary.accrued_penalty == Decimal('0.00')


class TestPayableGeneration:
    """Test the payable job through the service"""

    def setup_method(self):
        self.manager = LoanManager(InMemoryStorage(), LoanEngineConfig())
        self.manager.create_loan("LN-1", make_terms(), CREATED_AT)
        self.manager.activate_loan("LN-1", datetime(2025, 1, 15))
        self.manager.create_loan("LN-2", make_terms(months=6), CREATED_AT)

    def test_generation_is_idempotent(self):
        first = self.manager.generate_payables(date(2025, 1, 20))
        second = self.manager.generate_payables(date(2025, 1, 20))

        assert len(first["LN-1"].new_payables) == 12
        assert first["LN-2"].new_payables == []
        assert second["LN-1"].new_payables == []
        assert len(self.manager.get_payables("LN-1")) == 12

    def test_rerun_updates_statuses(self):
        self.manager.generate_payables(date(2025, 1, 20))
        result = self.manager.generate_loan_payables("LN-1", date(2025, 3, 1))

        assert result.updated_statuses[1] == PayableStatus.OVERDUE
        assert result.updated_statuses[2] == PayableStatus.PENDING

        first = self.manager.get_payables("LN-1")[0]
        assert first.status == PayableStatus.OVERDUE
        assert first.late_fee_accrued > 0

    def test_activation_later_fills_in(self):
        self.manager.generate_payables(date(2025, 1, 20))
        self.manager.activate_loan("LN-2", datetime(2025, 1, 21))

        result = self.manager.generate_payables(date(2025, 1, 22))

        assert len(result["LN-2"].new_payables) == 6
        assert result["LN-1"].new_payables == []

    def test_pay_and_cancel_payable(self):
        self.manager.generate_payables(date(2025, 1, 20))

        paid = self.manager.pay_payable("LN-1_1", Decimal('4000'), date(2025, 2, 10))
        cancelled = self.manager.cancel_payable("LN-1_12")

        assert paid.status == PayableStatus.PARTIAL
        assert paid.remaining_amount == Decimal('5333.33')
        assert cancelled.status == PayableStatus.CANCELLED

        with pytest.raises(InvalidStatusTransition):
            self.manager.cancel_payable("LN-1_1")

    def test_pay_payable_rejects_fraction_of_centavo(self):
        self.manager.generate_payables(date(2025, 1, 20))

        with pytest.raises(InvalidAmount):
            self.manager.pay_payable("LN-1_1", "100.005", date(2025, 2, 10))

        assert self.manager.get_payables("LN-1")[0].amount_paid == Decimal('0')

    def test_unknown_payable(self):
        with pytest.raises(ValueError):
            self.manager.pay_payable("LN-1_99", Decimal('1'), date(2025, 2, 10))

    def test_summary_and_due_soon(self):
        self.manager.generate_payables(date(2025, 1, 20))
        self.manager.pay_payable("LN-1_1", Decimal('9333.33'), date(2025, 2, 10))

        summary = self.manager.get_payables_summary("LN-1")
        assert summary.paid_count == 1
        assert summary.open_count == 11
        assert summary.total_paid == Decimal('9333.33')
        assert self.manager.get_payables_summary().total_payables == Decimal('111999.96')

        due_soon = self.manager.get_due_soon_payables(date(2025, 3, 10))
        assert [p.payable_id for p in due_soon] == ["LN-1_2"]
