"""
Lending Core

Loan amortization and repayment engine for a rural bank: product pricing,
flat and reducing-balance schedules, application lifecycle, and repayment
allocation with exact Decimal money and hash-chained audit trails.
"""

__version__ = "1.0.0"
