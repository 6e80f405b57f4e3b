"""
Loan Data Model

Enumerations and records the calculation engine reads and produces: loan
terms and state, penalty policies, fee definitions, payment records and
loan payables. All monetary fields are Decimal; dict conversion stores them
as strings so a round trip through JSON storage is lossless.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional
from enum import Enum

from .money import ZERO, to_decimal, is_whole_centavos
from .exceptions import InvalidTerms, InvalidStatusTransition


class InterestMethod(Enum):
    """How total interest is derived from the loan terms"""
    SIMPLE = "simple"                # principal x rate x years
    FLAT_ANNUAL = "flat_annual"      # same arithmetic, flat on original principal
    FLAT_ONE_TIME = "flat_one_time"  # principal x rate, independent of duration

    @classmethod
    def _missing_(cls, value):
        # Loans captured by the intake form carry the short "flat" label
        if value == "flat":
            return cls.FLAT_ANNUAL
        return None


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"

    @classmethod
    def from_code(cls, code: int) -> 'LoanStatus':
        """Map the numeric status codes used by the loan table"""
        codes = {
            1: cls.PENDING,
            2: cls.APPROVED,
            3: cls.ACTIVE,
            4: cls.COMPLETED,
            5: cls.DEFAULTED,
        }
        if code not in codes:
            raise ValueError(f"Unknown loan status code: {code}")
        return codes[code]


class PenaltyType(Enum):
    NONE = "none"
    FIXED = "fixed"            # rate is a peso amount
    PERCENTAGE = "percentage"  # rate is a percent of the calculation base


class PenaltyBase(Enum):
    """Amount a percentage penalty is computed against"""
    PRINCIPAL = "principal_amount"
    REMAINING_BALANCE = "remaining_balance"
    MONTHLY_INSTALLMENT = "monthly_payment"


class PaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentType(Enum):
    REGULAR = "regular"
    PARTIAL = "partial"
    FULL = "full"
    PENALTY = "penalty"    # regular payment that includes a penalty
    ADVANCE = "advance"


class PaymentMethod(Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    ONLINE = "online"
    GCASH = "gcash"
    PAYMAYA = "paymaya"


class PayableStatus(Enum):
    """Status of a materialized installment payable"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"

    @classmethod
    def from_code(cls, code: int) -> 'PayableStatus':
        codes = {
            1: cls.PENDING,
            2: cls.PARTIAL,
            3: cls.PAID,
            4: cls.OVERDUE,
            5: cls.CANCELLED,
        }
        if code not in codes:
            raise ValueError(f"Unknown payable status code: {code}")
        return codes[code]


class FeeBase(Enum):
    """Amount a percentage fee is computed against"""
    PRINCIPAL = "principal"
    TOTAL_AMOUNT = "total_amount"


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value)


def _optional_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _as_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


@dataclass(frozen=True)
class LoanTerms:
    """
    Immutable loan terms.

    Construction only normalises types; range checks live in ``validate``
    so that the interest calculator can report them as ``InvalidTerms``.
    """
    principal: Decimal
    annual_interest_rate: Decimal       # Percent, e.g. 12 for 12%
    duration_months: int
    interest_method: InterestMethod
    release_date: date

    def __post_init__(self):
        object.__setattr__(self, 'principal', to_decimal(self.principal))
        object.__setattr__(self, 'annual_interest_rate', to_decimal(self.annual_interest_rate))
        if not isinstance(self.interest_method, InterestMethod):
            object.__setattr__(self, 'interest_method', InterestMethod(self.interest_method))
        object.__setattr__(self, 'release_date', _as_date(self.release_date))

    def validate(self) -> None:
        """
        Raises:
            InvalidTerms: If principal, rate or duration is out of range
        """
        if self.principal <= Decimal('0'):
            raise InvalidTerms(f"Principal must be positive, got {self.principal}")
        if not is_whole_centavos(self.principal):
            raise InvalidTerms(f"Principal must be in whole centavos, got {self.principal}")
        if not isinstance(self.duration_months, int) or self.duration_months < 1:
            raise InvalidTerms(f"Duration must be at least 1 month, got {self.duration_months}")
        if self.annual_interest_rate < Decimal('0') or self.annual_interest_rate > Decimal('100'):
            raise InvalidTerms(
                f"Annual interest rate must be between 0 and 100, got {self.annual_interest_rate}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal),
            'annual_interest_rate': str(self.annual_interest_rate),
            'duration_months': self.duration_months,
            'interest_method': self.interest_method.value,
            'release_date': self.release_date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            principal=Decimal(data['principal']),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            duration_months=int(data['duration_months']),
            interest_method=InterestMethod(data['interest_method']),
            release_date=date.fromisoformat(data['release_date']),
        )


@dataclass(frozen=True)
class LoanFee:
    """Origination fee deducted from the released amount"""
    fee_type: str
    calculate_fee_on: FeeBase = FeeBase.PRINCIPAL
    fee_percentage: Optional[Decimal] = None
    fixed_amount: Optional[Decimal] = None

    def __post_init__(self):
        if not isinstance(self.calculate_fee_on, FeeBase):
            object.__setattr__(self, 'calculate_fee_on', FeeBase(self.calculate_fee_on))
        object.__setattr__(self, 'fee_percentage', _optional_decimal(self.fee_percentage))
        object.__setattr__(self, 'fixed_amount', _optional_decimal(self.fixed_amount))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fee_type': self.fee_type,
            'calculate_fee_on': self.calculate_fee_on.value,
            'fee_percentage': _optional_str(self.fee_percentage),
            'fixed_amount': _optional_str(self.fixed_amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanFee':
        return cls(
            fee_type=data['fee_type'],
            calculate_fee_on=FeeBase(data.get('calculate_fee_on', FeeBase.PRINCIPAL.value)),
            fee_percentage=data.get('fee_percentage'),
            fixed_amount=data.get('fixed_amount'),
        )


@dataclass
class LoanState:
    """
    Mutable per-loan record.

    ``total_payable`` and ``monthly_installment`` are frozen at creation;
    a change of terms means a new loan, never a recomputation.
    """
    loan_id: str
    terms: LoanTerms
    total_payable: Decimal
    monthly_installment: Decimal
    status: LoanStatus = LoanStatus.PENDING
    borrower_id: Optional[str] = None
    released_amount: Optional[Decimal] = None
    maturity_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.total_payable = to_decimal(self.total_payable)
        self.monthly_installment = to_decimal(self.monthly_installment)
        if self.released_amount is not None:
            self.released_amount = to_decimal(self.released_amount)

    @property
    def principal(self) -> Decimal:
        return self.terms.principal

    @property
    def total_interest(self) -> Decimal:
        return self.total_payable - self.terms.principal

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'terms': self.terms.to_dict(),
            'total_payable': str(self.total_payable),
            'monthly_installment': str(self.monthly_installment),
            'status': self.status.value,
            'borrower_id': self.borrower_id,
            'released_amount': _optional_str(self.released_amount),
            'maturity_date': self.maturity_date.isoformat() if self.maturity_date else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanState':
        def get_datetime(key: str) -> Optional[datetime]:
            if data.get(key):
                return datetime.fromisoformat(data[key])
            return None

        return cls(
            loan_id=data['loan_id'],
            terms=LoanTerms.from_dict(data['terms']),
            total_payable=Decimal(data['total_payable']),
            monthly_installment=Decimal(data['monthly_installment']),
            status=LoanStatus(data['status']),
            borrower_id=data.get('borrower_id'),
            released_amount=_optional_decimal(data.get('released_amount')),
            maturity_date=_as_date(data.get('maturity_date')),
            created_at=get_datetime('created_at'),
            updated_at=get_datetime('updated_at'),
        )


@dataclass(frozen=True)
class PenaltyPolicy:
    """Late payment penalty configured on a loan; several may apply at once"""
    penalty_type: PenaltyType
    rate: Decimal = Decimal('0.02')
    grace_period_days: int = 7
    calculation_base: PenaltyBase = PenaltyBase.MONTHLY_INSTALLMENT
    name: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.penalty_type, PenaltyType):
            object.__setattr__(self, 'penalty_type', PenaltyType(self.penalty_type))
        if not isinstance(self.calculation_base, PenaltyBase):
            object.__setattr__(self, 'calculation_base', PenaltyBase(self.calculation_base))
        object.__setattr__(self, 'rate', to_decimal(self.rate))
        if self.grace_period_days < 0:
            raise ValueError("Grace period days cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'penalty_type': self.penalty_type.value,
            'rate': str(self.rate),
            'grace_period_days': self.grace_period_days,
            'calculation_base': self.calculation_base.value,
            'name': self.name,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_grace_period_days: int = 7,
                  default_rate: Decimal = Decimal('0.02')) -> 'PenaltyPolicy':
        """Build a policy from a stored row, filling blank fields with defaults"""
        rate = data.get('rate')
        grace = data.get('grace_period_days')
        base = data.get('calculation_base') or PenaltyBase.MONTHLY_INSTALLMENT.value
        return cls(
            penalty_type=PenaltyType(data['penalty_type']),
            rate=default_rate if rate is None else Decimal(str(rate)),
            grace_period_days=default_grace_period_days if grace is None else int(grace),
            calculation_base=PenaltyBase(base),
            name=data.get('name'),
            description=data.get('description'),
        )


@dataclass(frozen=True)
class PaymentRecord:
    """
    Append-only record of a payment. Completed rows are never mutated;
    status changes produce a new record via ``with_status``.
    """
    payment_id: str
    loan_id: str
    amount: Decimal
    payment_date: date
    status: PaymentStatus = PaymentStatus.COMPLETED
    principal_portion: Decimal = ZERO
    interest_portion: Decimal = ZERO
    penalty_portion: Decimal = ZERO
    remaining_balance_after: Decimal = ZERO
    payment_type: PaymentType = PaymentType.REGULAR
    payment_method: PaymentMethod = PaymentMethod.CASH
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        for name in ('amount', 'principal_portion', 'interest_portion',
                     'penalty_portion', 'remaining_balance_after'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if not isinstance(self.status, PaymentStatus):
            object.__setattr__(self, 'status', PaymentStatus(self.status))
        object.__setattr__(self, 'payment_date', _as_date(self.payment_date))

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    @property
    def principal_and_interest(self) -> Decimal:
        return self.principal_portion + self.interest_portion

    def with_status(self, status: PaymentStatus) -> 'PaymentRecord':
        """Return a copy carrying ``status``; completed rows stay as they are"""
        if self.status != PaymentStatus.PENDING:
            raise InvalidStatusTransition(
                f"Payment {self.payment_id} is {self.status.value}; only pending payments change status"
            )
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payment_id': self.payment_id,
            'loan_id': self.loan_id,
            'amount': str(self.amount),
            'payment_date': self.payment_date.isoformat(),
            'status': self.status.value,
            'principal_portion': str(self.principal_portion),
            'interest_portion': str(self.interest_portion),
            'penalty_portion': str(self.penalty_portion),
            'remaining_balance_after': str(self.remaining_balance_after),
            'payment_type': self.payment_type.value,
            'payment_method': self.payment_method.value,
            'reference_number': self.reference_number,
            'notes': self.notes,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        processed_at = None
        if data.get('processed_at'):
            processed_at = datetime.fromisoformat(data['processed_at'])
        return cls(
            payment_id=data['payment_id'],
            loan_id=data['loan_id'],
            amount=Decimal(data['amount']),
            payment_date=date.fromisoformat(data['payment_date']),
            status=PaymentStatus(data['status']),
            principal_portion=Decimal(data['principal_portion']),
            interest_portion=Decimal(data['interest_portion']),
            penalty_portion=Decimal(data['penalty_portion']),
            remaining_balance_after=Decimal(data['remaining_balance_after']),
            payment_type=PaymentType(data['payment_type']),
            payment_method=PaymentMethod(data['payment_method']),
            reference_number=data.get('reference_number'),
            notes=data.get('notes'),
            processed_at=processed_at,
        )


@dataclass
class PayableRecord:
    """One materialized installment obligation of a loan"""
    payable_id: str
    loan_id: str
    installment_number: int
    due_date: date
    principal_component: Decimal
    interest_component: Decimal
    amount_due: Decimal
    amount_paid: Decimal = ZERO
    remaining_amount: Optional[Decimal] = None
    late_fee_rate: Decimal = ZERO          # Annual percent
    late_fee_accrued: Decimal = ZERO
    discount_rate: Decimal = ZERO          # Percent of amount due
    discount_accrued: Decimal = ZERO
    status: PayableStatus = PayableStatus.PENDING
    notes: Optional[str] = None

    def __post_init__(self):
        for name in ('principal_component', 'interest_component', 'amount_due',
                     'amount_paid', 'late_fee_rate', 'late_fee_accrued',
                     'discount_rate', 'discount_accrued'):
            setattr(self, name, to_decimal(getattr(self, name)))
        if self.remaining_amount is None:
            self.remaining_amount = max(ZERO, self.amount_due - self.amount_paid)
        else:
            self.remaining_amount = to_decimal(self.remaining_amount)
        self.due_date = _as_date(self.due_date)

    @property
    def key(self) -> tuple:
        """Identity of the installment this payable materializes"""
        return (self.loan_id, self.installment_number)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payable_id': self.payable_id,
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'principal_component': str(self.principal_component),
            'interest_component': str(self.interest_component),
            'amount_due': str(self.amount_due),
            'amount_paid': str(self.amount_paid),
            'remaining_amount': str(self.remaining_amount),
            'late_fee_rate': str(self.late_fee_rate),
            'late_fee_accrued': str(self.late_fee_accrued),
            'discount_rate': str(self.discount_rate),
            'discount_accrued': str(self.discount_accrued),
            'status': self.status.value,
            'notes': self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PayableRecord':
        return cls(
            payable_id=data['payable_id'],
            loan_id=data['loan_id'],
            installment_number=int(data['installment_number']),
            due_date=date.fromisoformat(data['due_date']),
            principal_component=Decimal(data['principal_component']),
            interest_component=Decimal(data['interest_component']),
            amount_due=Decimal(data['amount_due']),
            amount_paid=Decimal(data['amount_paid']),
            remaining_amount=Decimal(data['remaining_amount']),
            late_fee_rate=Decimal(data['late_fee_rate']),
            late_fee_accrued=Decimal(data['late_fee_accrued']),
            discount_rate=Decimal(data['discount_rate']),
            discount_accrued=Decimal(data['discount_accrued']),
            status=PayableStatus(data['status']),
            notes=data.get('notes'),
        )
