"""
Cooperative Loan Ledger

Loan amortization, repayment and fine ledger for a member savings and loan
cooperative, with exact minor-unit money arithmetic and a hash-chained audit
trail.
"""

__version__ = "1.0.0"
