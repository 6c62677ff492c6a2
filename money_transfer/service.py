"""
Bank Service Module

Calling layer over the transfer engine and balance reader: rejects business
rule violations before any transaction is opened and retries serialization
conflicts with a bounded, exponential backoff.
"""

from decimal import Decimal
from typing import Callable, Optional
import threading
import time

from .balance import BalanceReader
from .currency import validate_transfer_amount
from .errors import ErrorKind, LedgerError
from .logging_config import get_logger, log_action
from .models import TransferRequest, TransferResult
from .transfer import TransferEngine


class BankService:
    """Banking operations exposed to the API layer"""

    def __init__(
        self,
        engine: TransferEngine,
        balance_reader: BalanceReader,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.engine = engine
        self.balance_reader = balance_reader
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self.logger = get_logger("money_transfer.service")

    def transfer(self, request: TransferRequest,
                 cancel: Optional[threading.Event] = None) -> TransferResult:
        """
        Validate and execute a transfer.

        Raises:
            LedgerError: SAME_ACCOUNT or INVALID_AMOUNT without touching the
                store; otherwise whatever the engine raised on its last attempt
        """
        log_action(self.logger, "info", f"Transfer request: {request.from_id} -> {request.to_id}",
                   action="transfer", account_id=request.from_id,
                   extra={"to_id": request.to_id, "amount": str(request.amount)})

        if request.from_id == request.to_id:
            raise LedgerError(ErrorKind.SAME_ACCOUNT, account_id=request.from_id)
        amount = validate_transfer_amount(request.amount)

        attempt = 1
        while True:
            try:
                return self.engine.transfer(request.from_id, request.to_id, amount, cancel=cancel)
            except LedgerError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    log_action(self.logger, "warning", f"Transfer failed: {e}",
                               action="transfer", account_id=request.from_id,
                               error_kind=e.kind.value, extra={"attempts": attempt})
                    raise
                if cancel is not None and cancel.is_set():
                    raise
                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                log_action(self.logger, "info",
                           f"Serialization conflict, retrying transfer in {delay:.3f}s",
                           action="transfer", account_id=request.from_id,
                           error_kind=e.kind.value, extra={"attempt": attempt})
                self._sleep(delay)
                attempt += 1

    def get_balance(self, account_id: str) -> Decimal:
        """Return the current balance for the specified account"""
        return self.balance_reader.get_balance(account_id)
