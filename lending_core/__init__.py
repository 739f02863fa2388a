"""
Lending Core

Loan amortization and repayment schedules for peer-to-peer lending, with
installment progression, compliance checks and a hash-chained audit trail.
All money math uses Decimal.
"""

__version__ = "1.0.0"
