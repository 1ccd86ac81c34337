"""Storage layer - Database schema and repositories."""

from evm_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from evm_indexer.storage.models import (
    AddressTokenStatsModel,
    Base,
    BlockModel,
    IdentifierModel,
    TransactionModel,
    TransferLedgerModel,
)
from evm_indexer.storage.repos import (
    BlockDTO,
    BlockRepository,
    IdentifierDTO,
    LedgerRepository,
    StatsDTO,
    StatsRepository,
    TokenDTO,
    TokenRepository,
    TransactionDTO,
    TransactionRepository,
)

__all__ = [
    "AddressTokenStatsModel",
    "Base",
    "BlockDTO",
    "BlockModel",
    "BlockRepository",
    "DatabaseManager",
    "IdentifierDTO",
    "IdentifierModel",
    "LedgerRepository",
    "StatsDTO",
    "StatsRepository",
    "TokenDTO",
    "TokenRepository",
    "TransactionDTO",
    "TransactionModel",
    "TransactionRepository",
    "TransferLedgerModel",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
