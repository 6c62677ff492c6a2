"""
Test Data Seeding

Upserts a fixed set of demo accounts. Existing accounts with the same IDs have
their balances overwritten.
"""

from decimal import Decimal
from typing import Dict, Optional

from .currency import quantize_amount
from .errors import ErrorKind, LedgerError
from .logging_config import get_logger
from .storage import LedgerStorage


logger = get_logger("money_transfer.seed")

DEFAULT_TEST_ACCOUNTS: Dict[str, Decimal] = {
    "Mark": Decimal("100.00"),
    "Jane": Decimal("50.00"),
    "Adam": Decimal("0.00"),
}


def seed_test_accounts(storage: LedgerStorage,
                       accounts: Optional[Dict[str, Decimal]] = None) -> Dict[str, Decimal]:
    """
    Upsert accounts with starting balances in a single transaction.

    Returns:
        The balances that were written

    Raises:
        LedgerError(INVALID_AMOUNT): If any starting balance is negative
    """
    balances = {
        account_id: quantize_amount(balance)
        for account_id, balance in (accounts or DEFAULT_TEST_ACCOUNTS).items()
    }
    for account_id, balance in balances.items():
        if balance < 0:
            raise LedgerError(ErrorKind.INVALID_AMOUNT,
                              f"starting balance for {account_id} cannot be negative",
                              account_id=account_id)

    storage.upsert_accounts(balances)
    logger.info(f"Seeded {len(balances)} accounts: {', '.join(sorted(balances))}")
    return balances
