"""Data models for blocks and transactions delivered by the chain node."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


def to_bytes(value: Any) -> bytes:
    """Coerce an RPC value (HexBytes, bytes, '0x..' string) to bytes."""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        hexed = value[2:] if value.startswith(("0x", "0X")) else value
        if len(hexed) % 2:
            hexed = "0" + hexed
        return bytes.fromhex(hexed)
    raise TypeError(f"Cannot convert {type(value).__name__} to bytes")


def to_int(value: Any) -> int:
    """Coerce an RPC quantity (int or '0x..' string) to int."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
    return int(value)


def _optional_bytes(value: Any) -> bytes | None:
    if value is None:
        return None
    raw = to_bytes(value)
    return raw or None


@dataclass(frozen=True)
class RawTransaction:
    """A transaction as delivered by the node, before interning.

    Attributes:
        hash: 32-byte transaction hash.
        from_address: 20-byte sender.
        to_address: 20-byte recipient, or None for contract creation.
        value: Native value in wei.
        gas_limit: Gas limit of the transaction.
        gas_price: Effective gas price in wei.
        input: Call data (init code for deployments).
        tx_index: Position within the block.
        contract_address: Created contract address (from the receipt), if any.
        deployed_bytecode: Runtime bytecode of the created contract, if known.
    """

    hash: bytes
    from_address: bytes
    to_address: bytes | None
    value: int
    gas_limit: int
    gas_price: int
    input: bytes = b""
    tx_index: int = 0
    contract_address: bytes | None = None
    deployed_bytecode: bytes | None = None

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> RawTransaction:
        """Create a RawTransaction from an `eth_getBlockByNumber` tx object."""
        gas_price = data.get("gasPrice")
        if gas_price is None:
            gas_price = data.get("maxFeePerGas")
        return cls(
            hash=to_bytes(data["hash"]),
            from_address=to_bytes(data["from"]),
            to_address=_optional_bytes(data.get("to")),
            value=to_int(data.get("value")),
            gas_limit=to_int(data.get("gas")),
            gas_price=to_int(gas_price),
            input=to_bytes(data.get("input", data.get("data"))),
            tx_index=to_int(data.get("transactionIndex")),
            contract_address=_optional_bytes(data.get("contractAddress")),
            deployed_bytecode=_optional_bytes(data.get("deployedBytecode")),
        )


@dataclass(frozen=True)
class RawBlock:
    """A block with its ordered transactions, in canonical-chain order."""

    height: int
    hash: bytes
    parent_hash: bytes
    timestamp: int
    transactions: tuple[RawTransaction, ...] = field(default_factory=tuple)

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> RawBlock:
        """Create a RawBlock from a full-transaction `eth_getBlockByNumber` result."""
        transactions = tuple(
            RawTransaction.from_rpc(tx)
            for tx in data.get("transactions", [])
            if isinstance(tx, Mapping)
        )
        return cls(
            height=to_int(data["number"]),
            hash=to_bytes(data["hash"]),
            parent_hash=to_bytes(data.get("parentHash")),
            timestamp=to_int(data["timestamp"]),
            transactions=transactions,
        )

    @property
    def hash_hex(self) -> str:
        return "0x" + self.hash.hex()


@dataclass(frozen=True)
class ReorgNotification:
    """Explicit reorg notice: the block at `old_height` is no longer canonical."""

    old_height: int
    old_hash: bytes
    new_height: int
    new_hash: bytes
