"""
Loan Financial Calculation Engine

Deterministic loan arithmetic for a microfinance back office: flat-rate
interest, installment schedules, late-payment penalties, payment allocation
and idempotent installment payables, all in Decimal.
"""

__version__ = "1.0.0"
