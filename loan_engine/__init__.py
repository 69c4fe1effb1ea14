"""
Loan Financial Engine

Amortization schedules, EMI ledger, loan account lifecycle, restructuring
and heuristic credit scoring for installment loans. All money is Decimal.
"""

__version__ = "1.0.0"
