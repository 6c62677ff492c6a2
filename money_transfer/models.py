"""
Ledger Domain Models

Accounts, transfer requests and the terminal states a transfer can reach.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from .errors import AbortReason


@dataclass(frozen=True)
class Account:
    """A named account and its committed balance"""
    id: str
    balance: Decimal


@dataclass(frozen=True)
class TransferRequest:
    """Ephemeral descriptor of a requested transfer; never persisted"""
    from_id: str
    to_id: str
    amount: Decimal


class TransferState(Enum):
    """States of a transfer"""
    PENDING = "pending"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class TransferResult:
    """Terminal outcome of a transfer"""
    request: TransferRequest
    state: TransferState = TransferState.COMMITTED
    abort_reason: Optional[AbortReason] = None

    @property
    def is_committed(self) -> bool:
        return self.state == TransferState.COMMITTED
