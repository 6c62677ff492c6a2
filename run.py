#!/usr/bin/env python3
"""
Money Transfer Service Entry Point

Initializes the ledger schema, optionally seeds demo accounts and serves the
API with uvicorn.
"""

import sys

from money_transfer.api import create_app, run_server
from money_transfer.balance import BalanceReader
from money_transfer.config import get_config
from money_transfer.errors import LedgerError
from money_transfer.logging_config import setup_logging
from money_transfer.schema import SchemaInitializer
from money_transfer.seed import seed_test_accounts
from money_transfer.service import BankService
from money_transfer.storage import PostgreSQLLedgerStorage
from money_transfer.transfer import TransferEngine


def main() -> int:
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format)

    try:
        storage = PostgreSQLLedgerStorage(
            config.database_url,
            min_size=config.database_pool_min_size,
            max_size=config.database_pool_max_size,
            statement_timeout_ms=config.statement_timeout_ms
        )
    except LedgerError as e:
        logger.error(f"Cannot connect to database: {e}")
        return 1

    try:
        SchemaInitializer(storage).initialize()
        if config.seed_test_data:
            seed_test_accounts(storage)

        service = BankService(
            TransferEngine(storage),
            BalanceReader(storage),
            max_attempts=config.transfer_max_attempts,
            retry_backoff_seconds=config.transfer_retry_backoff_seconds
        )
        logger.info(f"Starting server on {config.api_host}:{config.api_port}")
        run_server(create_app(service), host=config.api_host, port=config.api_port,
                   log_level=config.log_level)
    except LedgerError as e:
        logger.error(f"Startup failed: {e}")
        return 1
    finally:
        storage.close()
        logger.info("Server exited properly")

    return 0


if __name__ == "__main__":
    sys.exit(main())
