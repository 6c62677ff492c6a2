"""
Error Taxonomy Module

Closed set of failure kinds for ledger operations. Callers compare errors by
``kind`` rather than by exception class or identity.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Kinds of ledger failures"""
    INVALID_AMOUNT = "invalid_amount"                  # amount <= 0 or not a 2dp value
    SAME_ACCOUNT = "same_account"                      # from_id == to_id
    ACCOUNT_NOT_FOUND = "account_not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SERIALIZATION_CONFLICT = "serialization_conflict"  # transient, retryable
    STORAGE_FAULT = "storage_fault"                    # connectivity/schema/driver


class AccountSide(Enum):
    """Which leg of a transfer an error refers to"""
    SOURCE = "source"
    DESTINATION = "destination"


class AbortReason(Enum):
    """Why a transfer transaction was aborted"""
    SOURCE_NOT_FOUND = "source_not_found"
    DESTINATION_NOT_FOUND = "destination_not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SERIALIZATION_CONFLICT = "serialization_conflict"
    STORAGE_FAULT = "storage_fault"


_DEFAULT_MESSAGES = {
    ErrorKind.INVALID_AMOUNT: "invalid amount",
    ErrorKind.SAME_ACCOUNT: "cannot transfer to same account",
    ErrorKind.ACCOUNT_NOT_FOUND: "account not found",
    ErrorKind.INSUFFICIENT_FUNDS: "insufficient funds",
    ErrorKind.SERIALIZATION_CONFLICT: "transaction conflicted with a concurrent transfer",
    ErrorKind.STORAGE_FAULT: "storage failure",
}


_ABORT_REASONS = {
    ErrorKind.INSUFFICIENT_FUNDS: AbortReason.INSUFFICIENT_FUNDS,
    ErrorKind.SERIALIZATION_CONFLICT: AbortReason.SERIALIZATION_CONFLICT,
    ErrorKind.STORAGE_FAULT: AbortReason.STORAGE_FAULT,
}


class LedgerError(Exception):
    """
    Raised by the ledger core for every failed operation.

    Attributes:
        kind: The ErrorKind of the failure
        side: For ACCOUNT_NOT_FOUND during a transfer, the missing leg
        account_id: The account the failure refers to, when known
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        side: Optional[AccountSide] = None,
        account_id: Optional[str] = None
    ):
        self.kind = kind
        self.side = side
        self.account_id = account_id
        super().__init__(message or _DEFAULT_MESSAGES[kind])

    @property
    def message(self) -> str:
        return str(self)

    @property
    def retryable(self) -> bool:
        """Only serialization conflicts may be retried by the caller"""
        return self.kind == ErrorKind.SERIALIZATION_CONFLICT

    @property
    def abort_reason(self) -> Optional[AbortReason]:
        """
        The abort reason of a transfer that failed with this error.

        None for business-rule errors (INVALID_AMOUNT, SAME_ACCOUNT), which are
        rejected before a transaction is opened.
        """
        if self.kind == ErrorKind.ACCOUNT_NOT_FOUND:
            if self.side == AccountSide.DESTINATION:
                return AbortReason.DESTINATION_NOT_FOUND
            return AbortReason.SOURCE_NOT_FOUND
        return _ABORT_REASONS.get(self.kind)

    def __repr__(self) -> str:
        parts = [f"kind={self.kind.value}"]
        if self.side:
            parts.append(f"side={self.side.value}")
        if self.account_id is not None:
            parts.append(f"account_id={self.account_id!r}")
        return f"LedgerError({', '.join(parts)}, message={self.message!r})"


class TransferCancelled(LedgerError):
    """Raised when a caller-supplied cancellation signal aborts a transaction"""

    def __init__(self, message: str = "transaction cancelled by caller"):
        super().__init__(ErrorKind.STORAGE_FAULT, message)


def account_not_found(account_id: str, side: Optional[AccountSide] = None) -> LedgerError:
    """Build an ACCOUNT_NOT_FOUND error qualified with the missing side"""
    if side:
        message = f"{side.value} account not found: {account_id}"
    else:
        message = f"account not found: {account_id}"
    return LedgerError(ErrorKind.ACCOUNT_NOT_FOUND, message, side=side, account_id=account_id)


def storage_fault(exc: BaseException) -> LedgerError:
    """Wrap an unexpected driver/storage exception"""
    error = LedgerError(ErrorKind.STORAGE_FAULT, f"storage failure: {exc}")
    error.__cause__ = exc
    return error
