"""Data models for the stats aggregator."""

from __future__ import annotations

from dataclasses import dataclass

from evm_indexer.models import NATIVE_TOKEN_ID


@dataclass(frozen=True)
class TransferEvent:
    """A value movement to be reflected in AddressTokenStats.

    Attributes:
        txhash_id: Interned hash of the originating transaction.
        block_id: Interned hash of the containing block.
        block_height: Height of the containing block.
        token_id: Token contract identifier, or NATIVE_TOKEN_ID for the native asset.
        from_id: Sender identifier; None for the synthetic zero address (mint).
        to_id: Receiver identifier; None for the synthetic zero address (burn).
        amount: Amount in wei / token base units.
        timestamp: Block timestamp (unix seconds).
    """

    txhash_id: int
    block_id: int
    block_height: int
    from_id: int | None
    to_id: int | None
    amount: int
    timestamp: int
    token_id: int = NATIVE_TOKEN_ID

    @property
    def is_native(self) -> bool:
        return self.token_id == NATIVE_TOKEN_ID
