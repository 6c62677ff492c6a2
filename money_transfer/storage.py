"""
Ledger Storage Module

Provides the abstract ledger storage interface and its implementations:
PostgreSQL for production and an in-memory double for testing. Every
transfer runs inside its own serializable transaction that is rolled back on
any exit path that does not reach a commit. All balances are Decimal.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
from decimal import Decimal
from contextlib import contextmanager
import threading

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extensions import ISOLATION_LEVEL_READ_COMMITTED, ISOLATION_LEVEL_SERIALIZABLE
from psycopg2.pool import ThreadedConnectionPool

from .currency import MAX_BALANCE, quantize_amount
from .errors import ErrorKind, LedgerError, TransferCancelled, storage_fault
from .logging_config import get_logger


logger = get_logger("money_transfer.storage")


SELECT_BALANCE_SQL = "SELECT balance FROM accounts WHERE id = %s"
ACCOUNT_EXISTS_SQL = "SELECT EXISTS(SELECT 1 FROM accounts WHERE id = %s)"
CONDITIONAL_DEBIT_SQL = """
    UPDATE accounts
    SET balance = balance - %(amount)s
    WHERE id = %(account_id)s AND balance >= %(amount)s
"""
CREDIT_SQL = "UPDATE accounts SET balance = balance + %(amount)s WHERE id = %(account_id)s"
UPSERT_ACCOUNT_SQL = """
    INSERT INTO accounts (id, balance) VALUES (%s, %s)
    ON CONFLICT (id) DO UPDATE SET balance = EXCLUDED.balance
"""


def _check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise TransferCancelled()


class LedgerTransaction(ABC):
    """
    A single transaction over the accounts table.

    Obtain one through LedgerStorage.transaction(); it is rolled back
    automatically unless commit() succeeded.
    """

    @abstractmethod
    def debit_if_sufficient(self, account_id: str, amount: Decimal) -> int:
        """Decrement balance by amount only if balance >= amount; returns rows affected"""
        pass

    @abstractmethod
    def credit(self, account_id: str, amount: Decimal) -> int:
        """Increment balance by amount unconditionally; returns rows affected"""
        pass

    @abstractmethod
    def account_exists(self, account_id: str) -> bool:
        """Check whether an account row exists"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the transaction"""
        pass

    @property
    @abstractmethod
    def is_finished(self) -> bool:
        """True once commit() or rollback() has completed"""
        pass

    def release(self) -> None:
        """Release underlying resources (default no-op)"""
        pass


class LedgerStorage(ABC):
    """Abstract interface for ledger storage backends"""

    @abstractmethod
    def apply_schema(self, statements: Sequence[str]) -> None:
        """Execute idempotent schema statements"""
        pass

    @abstractmethod
    def fetch_balance(self, account_id: str) -> Optional[Decimal]:
        """Single-row read of a committed balance; None if the account is absent"""
        pass

    @abstractmethod
    def upsert_accounts(self, balances: Dict[str, Decimal]) -> None:
        """Insert or overwrite account balances in one transaction"""
        pass

    @abstractmethod
    def begin(self, cancel: Optional[threading.Event] = None) -> LedgerTransaction:
        """Start a serializable transaction"""
        pass

    def close(self) -> None:
        """Close storage connections (default no-op)"""
        pass

    @contextmanager
    def transaction(self, cancel: Optional[threading.Event] = None) -> Iterator[LedgerTransaction]:
        """
        Context manager for a serializable transaction.

        The body must call commit() itself. On every other exit path
        (early return, exception, cancellation) the transaction is rolled back.
        """
        tx = self.begin(cancel)
        try:
            yield tx
        finally:
            try:
                if not tx.is_finished:
                    tx.rollback()
            except Exception as e:
                logger.error(f"Error rolling back transaction: {e}")
            finally:
                tx.release()


class _InMemoryTransaction(LedgerTransaction):
    """
    Optimistic transaction over a private copy of the ledger.

    Rows read or written are validated against their versions at commit time;
    if another transaction committed a change to any of them in between, the
    commit fails with a serialization conflict.
    """

    def __init__(self, storage: 'InMemoryLedgerStorage', cancel: Optional[threading.Event]):
        self._storage = storage
        self._cancel = cancel
        self._snapshot, self._versions = storage._snapshot()
        self._read_set: Dict[str, Optional[int]] = {}
        self._writes: Dict[str, Decimal] = {}
        self._finished = False

    def _read(self, account_id: str) -> Optional[Decimal]:
        self._check_active()
        self._read_set[account_id] = self._versions.get(account_id)
        if account_id in self._writes:
            return self._writes[account_id]
        return self._snapshot.get(account_id)

    def _check_active(self) -> None:
        if self._finished:
            raise LedgerError(ErrorKind.STORAGE_FAULT, "transaction has already been closed")
        _check_cancelled(self._cancel)

    def debit_if_sufficient(self, account_id: str, amount: Decimal) -> int:
        balance = self._read(account_id)
        if balance is None or balance < amount:
            return 0
        self._writes[account_id] = balance - amount
        return 1

    def credit(self, account_id: str, amount: Decimal) -> int:
        balance = self._read(account_id)
        if balance is None:
            return 0
        new_balance = balance + amount
        if new_balance > MAX_BALANCE:
            raise LedgerError(ErrorKind.STORAGE_FAULT, "numeric field overflow")
        self._writes[account_id] = new_balance
        return 1

    def account_exists(self, account_id: str) -> bool:
        return self._read(account_id) is not None

    def commit(self) -> None:
        self._check_active()
        try:
            self._storage._apply(self._read_set, self._writes)
        finally:
            self._finished = True

    def rollback(self) -> None:
        self._writes.clear()
        self._finished = True

    @property
    def is_finished(self) -> bool:
        return self._finished


class InMemoryLedgerStorage(LedgerStorage):
    """In-memory ledger storage implementation for testing"""

    def __init__(self):
        self._accounts: Dict[str, Decimal] = {}
        self._versions: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._schema_ready = False
        self.applied_schema: List[str] = []

    def _ensure_table(self) -> None:
        if not self._schema_ready:
            raise LedgerError(ErrorKind.STORAGE_FAULT, 'relation "accounts" does not exist')

    def _snapshot(self) -> Tuple[Dict[str, Decimal], Dict[str, int]]:
        with self._lock:
            self._ensure_table()
            return dict(self._accounts), dict(self._versions)

    def _apply(self, read_set: Dict[str, Optional[int]], writes: Dict[str, Decimal]) -> None:
        """Validate the read set and install writes atomically"""
        with self._lock:
            for account_id, version in read_set.items():
                if self._versions.get(account_id) != version:
                    raise LedgerError(
                        ErrorKind.SERIALIZATION_CONFLICT,
                        "could not serialize access due to concurrent update",
                        account_id=account_id
                    )
            for account_id, balance in writes.items():
                self._accounts[account_id] = balance
                self._versions[account_id] = self._versions.get(account_id, 0) + 1

    def apply_schema(self, statements: Sequence[str]) -> None:
        with self._lock:
            self.applied_schema.extend(statements)
            self._schema_ready = True

    def fetch_balance(self, account_id: str) -> Optional[Decimal]:
        with self._lock:
            self._ensure_table()
            return self._accounts.get(account_id)

    def upsert_accounts(self, balances: Dict[str, Decimal]) -> None:
        with self._lock:
            self._ensure_table()
            rows = {account_id: quantize_amount(balance) for account_id, balance in balances.items()}
            if any(balance > MAX_BALANCE for balance in rows.values()):
                raise LedgerError(ErrorKind.STORAGE_FAULT, "numeric field overflow")
            for account_id, balance in rows.items():
                self._accounts[account_id] = balance
                self._versions[account_id] = self._versions.get(account_id, 0) + 1

    def begin(self, cancel: Optional[threading.Event] = None) -> LedgerTransaction:
        _check_cancelled(cancel)
        return _InMemoryTransaction(self, cancel)

    def get_all_balances(self) -> Dict[str, Decimal]:
        """Get all committed balances for inspection"""
        with self._lock:
            return dict(self._accounts)


class _CancelWatcher:
    """Cancels the running statement on the server once the event is set"""

    POLL_INTERVAL = 0.05

    def __init__(self, connection, cancel: threading.Event):
        self._connection = connection
        self._cancel = cancel
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._watch, name="ledger-cancel-watcher", daemon=True)
        self._thread.start()

    def _watch(self) -> None:
        while not self._stopped.is_set():
            if self._cancel.wait(self.POLL_INTERVAL):
                with self._lock:
                    if not self._stopped.is_set():
                        try:
                            self._connection.cancel()
                        except psycopg2.Error as e:
                            logger.warning(f"Could not cancel running statement: {e}")
                return

    def stop(self) -> None:
        """Disarm the watcher; no cancel() reaches the connection once this returns"""
        with self._lock:
            self._stopped.set()


class _PostgreSQLTransaction(LedgerTransaction):
    """Serializable transaction bound to one pooled connection"""

    def __init__(self, storage: 'PostgreSQLLedgerStorage', connection,
                 cancel: Optional[threading.Event]):
        self._storage = storage
        self._connection = connection
        self._cancel = cancel
        self._finished = False
        self._watcher = _CancelWatcher(connection, cancel) if cancel is not None else None

    def _execute(self, sql: str, params) -> Tuple[int, Optional[tuple]]:
        if self._finished:
            raise LedgerError(ErrorKind.STORAGE_FAULT, "transaction has already been closed")
        _check_cancelled(self._cancel)
        try:
            with self._connection.cursor() as cursor:
                cursor.execute(sql, params)
                row = cursor.fetchone() if cursor.description else None
                return cursor.rowcount, row
        except psycopg2.Error as e:
            raise self._storage._translate_error(e, self._cancel)

    def debit_if_sufficient(self, account_id: str, amount: Decimal) -> int:
        rowcount, _ = self._execute(CONDITIONAL_DEBIT_SQL, {"amount": amount, "account_id": account_id})
        return rowcount

    def credit(self, account_id: str, amount: Decimal) -> int:
        rowcount, _ = self._execute(CREDIT_SQL, {"amount": amount, "account_id": account_id})
        return rowcount

    def account_exists(self, account_id: str) -> bool:
        _, row = self._execute(ACCOUNT_EXISTS_SQL, (account_id,))
        return bool(row and row[0])

    def commit(self) -> None:
        _check_cancelled(self._cancel)
        try:
            self._connection.commit()
        except psycopg2.Error as e:
            raise self._storage._translate_error(e, self._cancel)
        finally:
            self._finished = True

    def rollback(self) -> None:
        try:
            self._connection.rollback()
        finally:
            self._finished = True

    @property
    def is_finished(self) -> bool:
        return self._finished

    def release(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
        self._storage._release(self._connection)


class PostgreSQLLedgerStorage(LedgerStorage):
    """PostgreSQL ledger storage with serializable transactions"""

    def __init__(self, connection_string: str, min_size: int = 1, max_size: int = 10,
                 statement_timeout_ms: int = 0):
        self.connection_string = connection_string
        connect_kwargs = {}
        if statement_timeout_ms > 0:
            connect_kwargs["options"] = f"-c statement_timeout={statement_timeout_ms}"
        try:
            self._pool = ThreadedConnectionPool(min_size, max_size, connection_string, **connect_kwargs)
        except psycopg2.Error as e:
            raise storage_fault(e)
        # ThreadedConnectionPool raises instead of blocking when exhausted
        self._slots = threading.BoundedSemaphore(max_size)

    def _acquire(self, isolation_level: int, autocommit: bool = False):
        self._slots.acquire()
        try:
            connection = self._pool.getconn()
            connection.set_session(isolation_level=isolation_level, autocommit=autocommit)
            return connection
        except psycopg2.Error as e:
            self._slots.release()
            raise storage_fault(e)
        except Exception:
            self._slots.release()
            raise

    def _release(self, connection) -> None:
        try:
            self._pool.putconn(connection, close=bool(connection.closed))
        except psycopg2.Error as e:
            logger.error(f"Error returning connection to pool: {e}")
        finally:
            self._slots.release()

    @contextmanager
    def _connection(self, isolation_level: int = ISOLATION_LEVEL_READ_COMMITTED, autocommit: bool = False):
        connection = self._acquire(isolation_level, autocommit)
        try:
            yield connection
        except psycopg2.Error as e:
            if not autocommit and not connection.closed:
                try:
                    connection.rollback()
                except psycopg2.Error as rollback_error:
                    logger.error(f"Error rolling back transaction: {rollback_error}")
            raise self._translate_error(e)
        finally:
            self._release(connection)

    @staticmethod
    def _translate_error(exc: psycopg2.Error, cancel: Optional[threading.Event] = None) -> LedgerError:
        """Classify a driver error into the ledger error taxonomy"""
        if isinstance(exc, (pg_errors.SerializationFailure, pg_errors.DeadlockDetected)):
            error = LedgerError(ErrorKind.SERIALIZATION_CONFLICT, str(exc).strip())
            error.__cause__ = exc
            return error
        if isinstance(exc, pg_errors.QueryCanceled) and cancel is not None and cancel.is_set():
            error = TransferCancelled()
            error.__cause__ = exc
            return error
        return storage_fault(exc)

    def apply_schema(self, statements: Sequence[str]) -> None:
        with self._connection(autocommit=True) as connection:
            with connection.cursor() as cursor:
                for statement in statements:
                    cursor.execute(statement)

    def fetch_balance(self, account_id: str) -> Optional[Decimal]:
        with self._connection(autocommit=True) as connection:
            with connection.cursor() as cursor:
                cursor.execute(SELECT_BALANCE_SQL, (account_id,))
                row = cursor.fetchone()
                return row[0] if row else None

    def upsert_accounts(self, balances: Dict[str, Decimal]) -> None:
        with self._connection() as connection:
            with connection.cursor() as cursor:
                for account_id, balance in balances.items():
                    cursor.execute(UPSERT_ACCOUNT_SQL, (account_id, quantize_amount(balance)))
            connection.commit()

    def begin(self, cancel: Optional[threading.Event] = None) -> LedgerTransaction:
        _check_cancelled(cancel)
        connection = self._acquire(ISOLATION_LEVEL_SERIALIZABLE)
        return _PostgreSQLTransaction(self, connection, cancel)

    def close(self) -> None:
        """Close all pooled connections"""
        if not self._pool.closed:
            self._pool.closeall()
