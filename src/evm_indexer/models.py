"""Closed enumerations shared by every layer of the indexer."""

from __future__ import annotations

from enum import Enum

# Stats/ledger token id used for the chain's native asset (no ERC20 contract).
NATIVE_TOKEN_ID = 0

ADDRESS_WIDTH = 20
HASH_WIDTH = 32

ZERO_ADDRESS = bytes(ADDRESS_WIDTH)


class IdentifierKind(str, Enum):
    """Kind tag of an interned raw value."""

    EOA = "eoa"
    CONTRACT = "contract"
    TX_HASH = "txhash"
    BLOCK_HASH = "blockhash"

    @property
    def width(self) -> int:
        """Expected raw value length in bytes."""
        if self in (IdentifierKind.EOA, IdentifierKind.CONTRACT):
            return ADDRESS_WIDTH
        return HASH_WIDTH


class TxCategory(str, Enum):
    """Semantic category assigned to a transaction by the classifier."""

    ETH_TRANSFER = "eth_transfer"
    ERC20_TRANSFER = "erc20_transfer"
    CONTRACT_DEPLOYMENT = "contract_deployment"
    GENERIC_CALL = "generic_call"


class BlockState(str, Enum):
    """Lifecycle of a block inside the ingestion pipeline."""

    FETCHED = "fetched"
    INTERNING = "interning"
    WRITING = "writing"
    AGGREGATING = "aggregating"
    COMMITTED = "committed"
    RETRACTED = "retracted"
