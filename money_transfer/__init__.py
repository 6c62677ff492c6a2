"""
Money Transfer Ledger

Named accounts with Decimal balances and atomic, serializable transfers
between them.
"""

__version__ = "1.0.0"
