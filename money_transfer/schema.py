"""
Schema Initialization

Creates the accounts table if it is absent. Safe to run on every process
start; a failure here is fatal to startup and is not retried.
"""

from typing import List

from .errors import ErrorKind, LedgerError, storage_fault
from .logging_config import get_logger, log_action
from .storage import LedgerStorage


ACCOUNTS_TABLE_DDL = """
    CREATE TABLE IF NOT EXISTS accounts (
        id VARCHAR(255) PRIMARY KEY,
        balance DECIMAL(10, 2) NOT NULL
    )
"""

SCHEMA_STATEMENTS: List[str] = [ACCOUNTS_TABLE_DDL]


class SchemaInitializer:
    """Ensures the ledger schema exists"""

    def __init__(self, storage: LedgerStorage):
        self.storage = storage
        self.logger = get_logger("money_transfer.schema")

    def initialize(self) -> None:
        """
        Apply the schema statements.

        Raises:
            LedgerError(STORAGE_FAULT): If the database is unreachable or the
                statements cannot be executed
        """
        try:
            self.storage.apply_schema(SCHEMA_STATEMENTS)
        except LedgerError as e:
            log_action(self.logger, "error", f"Schema initialization failed: {e}",
                       action="initialize_schema", error_kind=e.kind.value)
            raise
        except Exception as e:
            log_action(self.logger, "error", f"Schema initialization failed: {e}",
                       action="initialize_schema", error_kind=ErrorKind.STORAGE_FAULT.value)
            raise storage_fault(e)

        log_action(self.logger, "info", "Ledger schema is ready", action="initialize_schema",
                   extra={"statements": len(SCHEMA_STATEMENTS)})
