"""
Microlend Lending Engine

Loan funding, escrow and repayment lifecycle for peer-to-peer micro-lending,
with Decimal money math, persisted ledgers and lender notifications.
"""

__version__ = "1.0.0"
