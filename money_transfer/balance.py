"""
Balance Reader

Point-in-time read of one account's committed balance.
"""

from decimal import Decimal

from .errors import LedgerError, account_not_found, storage_fault
from .logging_config import get_logger
from .models import Account
from .storage import LedgerStorage


class BalanceReader:
    """Reads account balances; has no side effects"""

    def __init__(self, storage: LedgerStorage):
        self.storage = storage
        self.logger = get_logger("money_transfer.balance")

    def get_account(self, account_id: str) -> Account:
        """
        Get an account with its committed balance.

        The ID is matched exactly (case-sensitive, no normalization).

        Raises:
            LedgerError(ACCOUNT_NOT_FOUND): If no account has this ID
            LedgerError(STORAGE_FAULT): On any other storage failure
        """
        try:
            balance = self.storage.fetch_balance(account_id)
        except LedgerError:
            raise
        except Exception as e:
            self.logger.error(f"Balance read failed for {account_id}: {e}")
            raise storage_fault(e)

        if balance is None:
            raise account_not_found(account_id)
        return Account(id=account_id, balance=balance)

    def get_balance(self, account_id: str) -> Decimal:
        """Get the committed balance of an account"""
        return self.get_account(account_id).balance
