"""Block ingestion layer - fetching canonical blocks from an EVM node."""

from evm_indexer.ingestor.chain import (
    ChainClientError,
    EvmClient,
    RPCError,
    TokenMetadata,
)
from evm_indexer.ingestor.models import (
    RawBlock,
    RawTransaction,
    ReorgNotification,
)

__all__ = [
    "ChainClientError",
    "EvmClient",
    "RPCError",
    "TokenMetadata",
    "RawBlock",
    "RawTransaction",
    "ReorgNotification",
]
