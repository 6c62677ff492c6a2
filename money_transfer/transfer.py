"""
Transfer Engine

Moves funds between two accounts inside one serializable transaction: a
conditional debit of the source followed by a credit of the destination.
Either both rows change and the transaction commits, or the transaction is
rolled back and neither changes. The engine holds no locks of its own and
performs no retries; concurrency control belongs to the storage backend.
"""

from typing import Optional
import threading

from .currency import AmountLike, format_amount, validate_transfer_amount
from .errors import AccountSide, ErrorKind, LedgerError, account_not_found, storage_fault
from .logging_config import get_logger, log_action
from .models import TransferRequest, TransferResult, TransferState
from .storage import LedgerStorage, LedgerTransaction


class TransferEngine:
    """Atomic debit/credit of account balances"""

    def __init__(self, storage: LedgerStorage):
        self.storage = storage
        self.logger = get_logger("money_transfer.transfer")

    def transfer(
        self,
        from_id: str,
        to_id: str,
        amount: AmountLike,
        cancel: Optional[threading.Event] = None
    ) -> TransferResult:
        """
        Transfer amount from one account to another.

        Args:
            from_id: Source account ID
            to_id: Destination account ID
            amount: Positive amount with at most two fractional digits
            cancel: Optional event; once set, the in-flight transaction is
                aborted and rolled back

        Returns:
            TransferResult in COMMITTED state

        Raises:
            LedgerError: INVALID_AMOUNT or SAME_ACCOUNT before any transaction
                is opened; ACCOUNT_NOT_FOUND (with side), INSUFFICIENT_FUNDS,
                SERIALIZATION_CONFLICT or STORAGE_FAULT after rollback
        """
        # Business-rule violations never reach the store
        if from_id == to_id:
            raise LedgerError(ErrorKind.SAME_ACCOUNT, account_id=from_id)
        value = validate_transfer_amount(amount)

        request = TransferRequest(from_id=from_id, to_id=to_id, amount=value)
        log_action(
            self.logger, "debug", f"Transfer pending: {from_id} -> {to_id}",
            action="transfer", account_id=from_id,
            extra={"to_id": to_id, "amount": str(value), "state": TransferState.PENDING.value}
        )
        try:
            with self.storage.transaction(cancel) as tx:
                self._debit(tx, request)
                self._credit(tx, request)
                tx.commit()
        except LedgerError as e:
            self._log_abort(self._aborted(request, e), e)
            raise
        except Exception as e:
            error = storage_fault(e)
            self.logger.exception(f"Unexpected failure during transfer {from_id} -> {to_id}")
            self._log_abort(self._aborted(request, error), error)
            raise error

        log_action(
            self.logger, "info", f"Transfer committed: {from_id} -> {to_id} ({format_amount(value)})",
            action="transfer", account_id=from_id,
            extra={"to_id": to_id, "amount": str(value), "state": TransferState.COMMITTED.value}
        )
        return TransferResult(request=request)

    def _debit(self, tx: LedgerTransaction, request: TransferRequest) -> None:
        """Conditional debit; disambiguates a zero-row update in the same transaction"""
        if tx.debit_if_sufficient(request.from_id, request.amount) > 0:
            return
        if not tx.account_exists(request.from_id):
            raise account_not_found(request.from_id, AccountSide.SOURCE)
        raise LedgerError(
            ErrorKind.INSUFFICIENT_FUNDS,
            f"insufficient funds in account {request.from_id}",
            side=AccountSide.SOURCE,
            account_id=request.from_id
        )

    def _credit(self, tx: LedgerTransaction, request: TransferRequest) -> None:
        if tx.credit(request.to_id, request.amount) == 0:
            raise account_not_found(request.to_id, AccountSide.DESTINATION)

    @staticmethod
    def _aborted(request: TransferRequest, error: LedgerError) -> TransferResult:
        return TransferResult(request=request, state=TransferState.ABORTED, abort_reason=error.abort_reason)

    def _log_abort(self, outcome: TransferResult, error: LedgerError) -> None:
        request = outcome.request
        log_action(
            self.logger, "warning",
            f"Transfer aborted: {request.from_id} -> {request.to_id}: {error}",
            action="transfer", account_id=request.from_id, error_kind=error.kind.value,
            extra={
                "to_id": request.to_id,
                "amount": str(request.amount),
                "state": outcome.state.value,
                "reason": outcome.abort_reason.value if outcome.abort_reason else None,
            }
        )
