"""
Tests for the transfer engine

Covers the seeded scenarios, atomicity of failed transfers, conservation of
the total balance, serialization conflicts and caller cancellation.
"""

import logging
import pytest
import threading
from decimal import Decimal
from unittest.mock import patch

from money_transfer.errors import AbortReason, AccountSide, ErrorKind, LedgerError, TransferCancelled
from money_transfer.currency import MAX_BALANCE
from money_transfer.models import TransferState
from money_transfer.schema import SchemaInitializer
from money_transfer.seed import seed_test_accounts
from money_transfer.storage import InMemoryLedgerStorage
from money_transfer.transfer import TransferEngine


def make_storage():
    storage = InMemoryLedgerStorage()
    SchemaInitializer(storage).initialize()
    seed_test_accounts(storage)
    return storage


class TestTransferScenarios:
    """Seeded accounts: Mark=100, Jane=50, Adam=0"""

    def setup_method(self):
        self.storage = make_storage()
        self.engine = TransferEngine(self.storage)

    def balance(self, account_id):
        return self.storage.fetch_balance(account_id)

    def test_successful_transfer(self):
        result = self.engine.transfer("Mark", "Jane", Decimal("50"))

        assert result.state == TransferState.COMMITTED
        assert result.is_committed
        assert result.request.amount == Decimal("50.00")
        assert self.balance("Mark") == Decimal("50.00")
        assert self.balance("Jane") == Decimal("100.00")

    def test_insufficient_funds(self):
        with pytest.raises(LedgerError) as exc_info:
            self.engine.transfer("Adam", "Jane", Decimal("50"))

        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert exc_info.value.abort_reason == AbortReason.INSUFFICIENT_FUNDS
        assert self.balance("Adam") == Decimal("0.00")
        assert self.balance("Jane") == Decimal("50.00")

    def test_source_does_not_exist(self):
        with pytest.raises(LedgerError) as exc_info:
            self.engine.transfer("NonExistent", "Jane", Decimal("50"))

        error = exc_info.value
        assert error.kind == ErrorKind.ACCOUNT_NOT_FOUND
        assert error.side == AccountSide.SOURCE
        assert error.account_id == "NonExistent"
        assert error.abort_reason == AbortReason.SOURCE_NOT_FOUND
        assert self.balance("Jane") == Decimal("50.00")

    def test_destination_does_not_exist_rolls_back_debit(self):
        with pytest.raises(LedgerError) as exc_info:
            self.engine.transfer("Mark", "NonExistent", Decimal("50"))

        error = exc_info.value
        assert error.kind == ErrorKind.ACCOUNT_NOT_FOUND
        assert error.side == AccountSide.DESTINATION
        assert error.abort_reason == AbortReason.DESTINATION_NOT_FOUND
        assert self.balance("Mark") == Decimal("100.00")
        assert self.balance("NonExistent") is None

    def test_same_account_rejected_before_store(self):
        with patch.object(self.storage, "begin", wraps=self.storage.begin) as begin:
            with pytest.raises(LedgerError) as exc_info:
                self.engine.transfer("Mark", "Mark", Decimal("50"))

        assert exc_info.value.kind == ErrorKind.SAME_ACCOUNT
        assert exc_info.value.abort_reason is None
        begin.assert_not_called()
        assert self.balance("Mark") == Decimal("100.00")

    @pytest.mark.parametrize("amount", [
        Decimal("-50"), Decimal("0"), Decimal("0.001"), "NaN", "abc", Decimal("1e27"), Decimal("1e100")
    ])
    def test_invalid_amount_rejected_before_store(self, amount):
        with patch.object(self.storage, "begin", wraps=self.storage.begin) as begin:
            with pytest.raises(LedgerError) as exc_info:
                self.engine.transfer("Mark", "Jane", amount)

        assert exc_info.value.kind == ErrorKind.INVALID_AMOUNT
        begin.assert_not_called()
        assert self.balance("Mark") == Decimal("100.00")
        assert self.balance("Jane") == Decimal("50.00")

    def test_same_account_is_checked_before_amount(self):
        with pytest.raises(LedgerError) as exc_info:
            self.engine.transfer("Mark", "Mark", Decimal("-50"))

        assert exc_info.value.kind == ErrorKind.SAME_ACCOUNT

    def test_amount_above_column_ceiling_is_insufficient_funds(self):
        with pytest.raises(LedgerError) as exc_info:
            self.engine.transfer("Mark", "Jane", MAX_BALANCE + Decimal("0.01"))

        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert exc_info.value.side == AccountSide.SOURCE
        assert self.balance("Mark") == Decimal("100.00")
        assert self.balance("Jane") == Decimal("50.00")

    def test_logged_states_follow_the_transfer(self, caplog):
        caplog.set_level(logging.DEBUG, logger="money_transfer")

        self.engine.transfer("Mark", "Jane", Decimal("10"))
        with pytest.raises(LedgerError):
            self.engine.transfer("Adam", "Jane", Decimal("10"))

        states = [(r.extra["state"], r.extra.get("reason")) for r in caplog.records if getattr(r, "extra", None)]
        assert states == [
            ("pending", None),
            ("committed", None),
            ("pending", None),
            ("aborted", "insufficient_funds"),
        ]

    def test_exact_balance_can_be_transferred(self):
        self.engine.transfer("Jane", "Adam", Decimal("50.00"))

        assert self.balance("Jane") == Decimal("0.00")
        assert self.balance("Adam") == Decimal("50.00")

    def test_float_amount_uses_decimal_representation(self):
        self.engine.transfer("Mark", "Jane", 0.1)

        assert self.balance("Mark") == Decimal("99.90")
        assert self.balance("Jane") == Decimal("50.10")

    def test_account_ids_are_case_sensitive(self):
        with pytest.raises(LedgerError) as exc_info:
            self.engine.transfer("mark", "Jane", Decimal("1"))

        assert exc_info.value.side == AccountSide.SOURCE
        assert self.balance("Mark") == Decimal("100.00")


class TestTransferAtomicity:
    """Failed transfers never leave partial mutations behind"""

    def setup_method(self):
        self.storage = make_storage()
        self.engine = TransferEngine(self.storage)

    def hook_transaction(self, **overrides):
        """Wrap storage.begin so that transaction methods can be replaced"""
        original_begin = self.storage.begin
        transactions = []

        def begin(cancel=None):
            tx = original_begin(cancel)
            for name, factory in overrides.items():
                setattr(tx, name, factory(tx, getattr(tx, name), cancel))
            transactions.append(tx)
            return tx

        self.storage.begin = begin
        return transactions

    def test_unexpected_error_between_statements_is_storage_fault(self):
        def failing_credit(tx, original, cancel):
            def credit(account_id, amount):
                raise RuntimeError("connection reset")
            return credit

        transactions = self.hook_transaction(credit=failing_credit)

        with pytest.raises(LedgerError) as exc_info:
            self.engine.transfer("Mark", "Jane", Decimal("30"))

        assert exc_info.value.kind == ErrorKind.STORAGE_FAULT
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert transactions[0].is_finished
        assert self.storage.fetch_balance("Mark") == Decimal("100.00")
        assert self.storage.fetch_balance("Jane") == Decimal("50.00")

    def test_conflicting_commit_is_serialization_conflict(self):
        engine = self.engine

        def racing_debit(tx, original, cancel):
            def debit(account_id, amount):
                rows = original(account_id, amount)
                # Another transfer touching the same rows commits first
                del self.storage.begin
                engine.transfer("Jane", "Mark", Decimal("10"))
                return rows
            return debit

        self.hook_transaction(debit_if_sufficient=racing_debit)

        with pytest.raises(LedgerError) as exc_info:
            self.engine.transfer("Mark", "Jane", Decimal("50"))

        error = exc_info.value
        assert error.kind == ErrorKind.SERIALIZATION_CONFLICT
        assert error.retryable
        assert error.abort_reason == AbortReason.SERIALIZATION_CONFLICT
        # Only the competing transfer was applied
        assert self.storage.fetch_balance("Mark") == Decimal("110.00")
        assert self.storage.fetch_balance("Jane") == Decimal("40.00")

    def test_cancel_before_start(self):
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(TransferCancelled) as exc_info:
            self.engine.transfer("Mark", "Jane", Decimal("10"), cancel=cancel)

        assert exc_info.value.kind == ErrorKind.STORAGE_FAULT
        assert self.storage.fetch_balance("Mark") == Decimal("100.00")

    def test_cancel_mid_transaction_rolls_back(self):
        def cancelling_debit(tx, original, cancel):
            def debit(account_id, amount):
                rows = original(account_id, amount)
                cancel.set()
                return rows
            return debit

        transactions = self.hook_transaction(debit_if_sufficient=cancelling_debit)
        cancel = threading.Event()

        with pytest.raises(TransferCancelled):
            self.engine.transfer("Mark", "Jane", Decimal("10"), cancel=cancel)

        assert transactions[0].is_finished
        assert self.storage.fetch_balance("Mark") == Decimal("100.00")
        assert self.storage.fetch_balance("Jane") == Decimal("50.00")

    def test_credit_overflow_is_storage_fault(self):
        self.storage.upsert_accounts({"Jane": Decimal("99999999.99")})

        with pytest.raises(LedgerError) as exc_info:
            self.engine.transfer("Mark", "Jane", Decimal("1"))

        assert exc_info.value.kind == ErrorKind.STORAGE_FAULT
        assert self.storage.fetch_balance("Mark") == Decimal("100.00")


class TestTransferConcurrency:
    """Concurrent transfers preserve the total balance"""

    def setup_method(self):
        self.storage = make_storage()
        self.engine = TransferEngine(self.storage)

    def test_concurrent_transfers_conserve_money(self):
        num_transfers = 10
        amount = Decimal("1")
        initial_mark = self.storage.fetch_balance("Mark")
        initial_jane = self.storage.fetch_balance("Jane")

        lock = threading.Lock()
        outcomes = {"committed": 0, "failed": []}
        start = threading.Barrier(num_transfers * 2)

        def run(from_id, to_id):
            start.wait()
            try:
                self.engine.transfer(from_id, to_id, amount)
            except LedgerError as e:
                with lock:
                    outcomes["failed"].append(e.kind)
            else:
                with lock:
                    outcomes["committed"] += 1

        threads = []
        for _ in range(num_transfers):
            threads.append(threading.Thread(target=run, args=("Mark", "Jane")))
            threads.append(threading.Thread(target=run, args=("Jane", "Mark")))
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        final_mark = self.storage.fetch_balance("Mark")
        final_jane = self.storage.fetch_balance("Jane")

        assert outcomes["committed"] + len(outcomes["failed"]) == num_transfers * 2
        assert all(kind == ErrorKind.SERIALIZATION_CONFLICT for kind in outcomes["failed"])
        assert final_mark + final_jane == initial_mark + initial_jane
        max_change = outcomes["committed"] * amount
        assert abs(final_mark - initial_mark) <= max_change
        assert abs(final_jane - initial_jane) <= max_change
        assert final_mark >= 0 and final_jane >= 0

    def test_draining_one_source_never_goes_negative(self):
        self.storage.upsert_accounts({"Adam": Decimal("5.00")})
        start = threading.Barrier(10)
        committed = []
        lock = threading.Lock()

        def drain():
            start.wait()
            try:
                self.engine.transfer("Adam", "Jane", Decimal("1"))
            except LedgerError:
                return
            with lock:
                committed.append(1)

        threads = [threading.Thread(target=drain) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(committed) <= 5
        assert self.storage.fetch_balance("Adam") == Decimal("5.00") - len(committed)
        assert self.storage.fetch_balance("Jane") == Decimal("50.00") + len(committed)
