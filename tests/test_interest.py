"""
Test suite for the interest calculator

Covers total interest, total payable and monthly installment for every
interest method, rounding behaviour, term validation and origination fees.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.models import LoanTerms, LoanFee, InterestMethod, FeeBase
from loan_engine.interest import (
    LoanTotals, duration_in_months, calculate_total_interest, compute_loan_totals,
    monthly_interest_portion, monthly_principal_portion, calculate_fee,
    compute_total_fees, compute_released_amount
)
from loan_engine.exceptions import InvalidTerms


def make_terms(principal="100000", rate="12", months=12,
               method=InterestMethod.FLAT_ANNUAL, release=date(2025, 1, 15)):
    return LoanTerms(
        principal=Decimal(principal),
        annual_interest_rate=Decimal(rate),
        duration_months=months,
        interest_method=method,
        release_date=release
    )


class TestComputeLoanTotals:
    """Test totals frozen onto a loan at creation"""

    def test_flat_annual_reference_loan(self):
        """100,000 at 12% for 12 months"""
        totals = compute_loan_totals(make_terms())

        assert totals == LoanTotals(
            total_interest=Decimal('12000.00'),
            total_payable=Decimal('112000.00'),
            monthly_installment=Decimal('9333.33')
        )

    def test_simple_matches_flat_annual(self):
        simple = compute_loan_totals(make_terms(method=InterestMethod.SIMPLE))
        flat = compute_loan_totals(make_terms(method=InterestMethod.FLAT_ANNUAL))
        assert simple == flat

    def test_flat_annual_scales_with_duration(self):
        totals = compute_loan_totals(make_terms(months=24))

        assert totals.total_interest == Decimal('24000.00')
        assert totals.total_payable == Decimal('124000.00')
        assert totals.monthly_installment == Decimal('5166.67')

    def test_flat_one_time_ignores_duration(self):
        totals = compute_loan_totals(make_terms(months=24, method=InterestMethod.FLAT_ONE_TIME))

        assert totals.total_interest == Decimal('12000.00')
        assert totals.total_payable == Decimal('112000.00')
        assert totals.monthly_installment == Decimal('4666.67')

    def test_no_intermediate_rounding(self):
        """1000 at 10% for one month is 8.33, not 1000 x 0.10 x 0.08"""
        totals = compute_loan_totals(make_terms(principal="1000", rate="10", months=1))

        assert totals.total_interest == Decimal('8.33')
        assert totals.total_payable == Decimal('1008.33')
        assert totals.monthly_installment == Decimal('1008.33')

    def test_fractional_year(self):
        totals = compute_loan_totals(make_terms(principal="5000", rate="5", months=3))

        assert totals.total_interest == Decimal('62.50')
        assert totals.total_payable == Decimal('5062.50')
        assert totals.monthly_installment == Decimal('1687.50')

    def test_installment_rounds_half_up(self):
        totals = compute_loan_totals(
            make_terms(principal="100", rate="0.01", months=2, method=InterestMethod.FLAT_ONE_TIME)
        )

        assert totals.total_payable == Decimal('100.01')
        assert totals.monthly_installment == Decimal('50.01')

    def test_zero_rate(self):
        totals = compute_loan_totals(make_terms(rate="0", months=4))

        assert totals.total_interest == Decimal('0.00')
        assert totals.total_payable == Decimal('100000.00')
        assert totals.monthly_installment == Decimal('25000.00')

    def test_full_rate_allowed(self):
        totals = compute_loan_totals(make_terms(rate="100"))
        assert totals.total_interest == Decimal('100000.00')

    @pytest.mark.parametrize("principal,rate,months,method", [
        ("100000", "12", 12, InterestMethod.FLAT_ANNUAL),
        ("75000.50", "7.25", 18, InterestMethod.SIMPLE),
        ("1234.56", "3.3", 7, InterestMethod.FLAT_ONE_TIME),
        ("999999.99", "99.99", 60, InterestMethod.FLAT_ANNUAL),
    ])
    def test_total_payable_is_principal_plus_interest(self, principal, rate, months, method):
        terms = make_terms(principal=principal, rate=rate, months=months, method=method)
        totals = compute_loan_totals(terms)

        assert totals.total_payable == terms.principal + totals.total_interest
        assert totals.total_interest >= 0
        assert totals.monthly_installment > 0


class TestTermValidation:
    """Invalid terms are rejected before any arithmetic"""

    @pytest.mark.parametrize("principal", ["0", "-1", "-100000"])
    def test_non_positive_principal(self, principal):
        with pytest.raises(InvalidTerms, match="Principal"):
            compute_loan_totals(make_terms(principal=principal))

    @pytest.mark.parametrize("principal", ["1000.005", "0.001", "99999.999"])
    def test_fraction_of_centavo_principal(self, principal):
        with pytest.raises(InvalidTerms, match="whole centavos"):
            compute_loan_totals(make_terms(principal=principal, rate="0"))

    @pytest.mark.parametrize("months", [0, -12])
    def test_duration_below_one(self, months):
        with pytest.raises(InvalidTerms, match="Duration"):
            compute_loan_totals(make_terms(months=months))

    @pytest.mark.parametrize("rate", ["-0.01", "100.01", "250"])
    def test_rate_out_of_range(self, rate):
        with pytest.raises(InvalidTerms, match="interest rate"):
            compute_loan_totals(make_terms(rate=rate))

    def test_unknown_method_string_rejected(self):
        with pytest.raises(ValueError):
            make_terms(method="compound")

    def test_short_flat_label(self):
        terms = make_terms(method="flat")
        assert terms.interest_method == InterestMethod.FLAT_ANNUAL


class TestCalculateTotalInterest:

    def test_unrounded_result(self):
        interest = calculate_total_interest(make_terms(principal="1000", rate="10", months=1))
        assert interest != Decimal('8.33')
        assert interest.quantize(Decimal('0.0001')) == Decimal('8.3333')


class TestDurationInMonths:

    def test_months(self):
        assert duration_in_months(6, "months") == 6

    def test_years(self):
        assert duration_in_months(2, "years") == 24

    def test_unknown_period(self):
        with pytest.raises(InvalidTerms):
            duration_in_months(3, "weeks")

    def test_non_positive(self):
        with pytest.raises(InvalidTerms):
            duration_in_months(0, "years")


class TestMonthlyPortions:

    def test_interest_slice(self):
        assert monthly_interest_portion(Decimal('112000.00'), Decimal('100000'), 12) == Decimal('1000.00')

    def test_principal_slice(self):
        assert monthly_principal_portion(Decimal('100000'), 12) == Decimal('8333.33')

    def test_zero_interest(self):
        assert monthly_interest_portion(Decimal('100000.00'), Decimal('100000'), 12) == Decimal('0.00')


class TestOriginationFees:
    """Test fees and the amount released to the borrower"""

    def setup_method(self):
        self.principal = Decimal('100000')
        self.total_payable = Decimal('112000.00')

    def test_percentage_of_principal(self):
        fee = LoanFee(fee_type="processing", fee_percentage=Decimal('2'))
        assert calculate_fee(fee, self.principal, self.total_payable) == Decimal('2000')

    def test_percentage_of_total_amount(self):
        fee = LoanFee(fee_type="service", calculate_fee_on=FeeBase.TOTAL_AMOUNT,
                      fee_percentage=Decimal('1'))
        assert calculate_fee(fee, self.principal, self.total_payable) == Decimal('1120')

    def test_fixed_amount(self):
        fee = LoanFee(fee_type="notarial", fixed_amount="500")
        assert calculate_fee(fee, self.principal, self.total_payable) == Decimal('500')

    def test_empty_fee_is_zero(self):
        fee = LoanFee(fee_type="waived")
        assert calculate_fee(fee, self.principal, self.total_payable) == Decimal('0')

    def test_total_and_released(self):
        fees = [
            LoanFee(fee_type="processing", fee_percentage=Decimal('2')),
            LoanFee(fee_type="service", calculate_fee_on="total_amount", fee_percentage="1"),
            LoanFee(fee_type="notarial", fixed_amount="500"),
        ]

        assert compute_total_fees(fees, self.principal, self.total_payable) == Decimal('3620.00')
        assert compute_released_amount(self.principal, fees, self.total_payable) == Decimal('96380.00')

    def test_no_fees_releases_principal(self):
        assert compute_released_amount(self.principal, [], self.total_payable) == Decimal('100000.00')

    def test_fees_consuming_principal_rejected(self):
        fees = [LoanFee(fee_type="processing", fee_percentage=Decimal('100'))]
        with pytest.raises(InvalidTerms):
            compute_released_amount(self.principal, fees, self.total_payable)
