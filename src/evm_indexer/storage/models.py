"""SQLAlchemy models for persistent storage.

This module defines the interned-identifier schema: the identifier arena,
its side tables (nicknames, ERC20 metadata), blocks, the generic
transaction table with its three category subtypes, and the aggregator's
stats and ledger tables.
"""

from __future__ import annotations

import time
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    SmallInteger,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from evm_indexer.models import IdentifierKind, TxCategory

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
SurrogateId = BigInteger().with_variant(Integer(), "sqlite")

# uint256 amounts (wei, token base units, supply) and signed running balances.
Uint256 = Numeric(78, 0)

# Raw values are split into an indexed fixed-width prefix and the remainder.
PREFIX_WIDTH = 16


def _unix_now() -> int:
    return int(time.time())


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class IdentifierModel(Base):
    """Interned raw value (address or hash) with its dense surrogate id."""

    __tablename__ = "ids"

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    prefix: Mapped[bytes] = mapped_column(LargeBinary(PREFIX_WIDTH), nullable=False)
    remainder: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    id_type: Mapped[IdentifierKind] = mapped_column(
        Enum(
            IdentifierKind,
            name="id_type",
            values_callable=lambda kinds: [k.value for k in kinds],
        ),
        nullable=False,
    )
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_unix_now)

    __table_args__ = (
        UniqueConstraint("id_type", "prefix", "remainder", name="uq_ids_value"),
        Index("idx_ids_prefix_type", "prefix", "id_type"),
    )


class NicknameModel(Base):
    """Human label attached to an identifier (many per identifier)."""

    __tablename__ = "nicks"

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    identifier_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=False)
    nick: Mapped[str] = mapped_column(String(255), nullable=False)
    nick_type: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_unix_now)

    __table_args__ = (Index("idx_nicks_identifier", "identifier_id"),)


class Erc20TokenModel(Base):
    """ERC20 metadata for a contract identifier (at most one per identifier)."""

    __tablename__ = "erc20tokens"

    identifier_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ids.id"), primary_key=True, autoincrement=False
    )
    token_name: Mapped[str] = mapped_column(String(255), nullable=False)
    symbol: Mapped[str] = mapped_column(String(100), nullable=False)
    decimals: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    supply: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_unix_now)

    __table_args__ = (Index("idx_erc20tokens_symbol", "symbol"),)


class BlockModel(Base):
    """Committed canonical block, keyed by its block-hash identifier."""

    __tablename__ = "blocks"

    identifier_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ids.id"), primary_key=True, autoincrement=False
    )
    height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    parent_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=True)
    tx_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    committed_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_unix_now)

    __table_args__ = (UniqueConstraint("height", name="uq_blocks_height"),)


class TransactionModel(Base):
    """Generic record written for every transaction."""

    __tablename__ = "txs"

    txhash_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ids.id"), primary_key=True, autoincrement=False
    )
    block_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("blocks.identifier_id"), nullable=False
    )
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_index: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[TxCategory] = mapped_column(
        Enum(
            TxCategory,
            name="tx_category",
            values_callable=lambda categories: [c.value for c in categories],
        ),
        nullable=False,
    )
    tx_value: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    from_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=False)
    # NULL only for deployments whose created address is unknown.
    to_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=True)
    gas_limit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gas_price: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    method_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    params: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    __table_args__ = (
        Index("idx_txs_block_height", "block_height", "tx_index"),
        Index("idx_txs_block_id", "block_id"),
        Index("idx_txs_from", "from_id"),
        Index("idx_txs_to", "to_id"),
    )


class EthTransferModel(Base):
    """Plain value transfer (empty call data)."""

    __tablename__ = "ethtxs"

    txhash_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("txs.txhash_id"), primary_key=True, autoincrement=False
    )
    tx_value: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    from_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=False)
    to_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=False)


class Erc20TransferModel(Base):
    """Decoded ERC20 `transfer(address,uint256)` invocation."""

    __tablename__ = "erc20txs"

    txhash_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("txs.txhash_id"), primary_key=True, autoincrement=False
    )
    token_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=False)
    from_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=False)
    to_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=False)
    tx_value: Mapped[Decimal] = mapped_column(Uint256, nullable=False)

    __table_args__ = (Index("idx_erc20txs_token", "token_id"),)


class ContractDeploymentModel(Base):
    """Contract creation transaction."""

    __tablename__ = "contracts"

    txhash_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("txs.txhash_id"), primary_key=True, autoincrement=False
    )
    address_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=True)
    deployer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=False)
    bytecode: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    __table_args__ = (Index("idx_contracts_deployer", "deployer_id"),)


class AddressTokenStatsModel(Base):
    """Running balance and activity window per (address, token).

    token_id is 0 for the native asset, so it carries no foreign key.
    """

    __tablename__ = "stats"

    address_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ids.id"), primary_key=True, autoincrement=False
    )
    token_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    balance: Mapped[Decimal] = mapped_column(Uint256, nullable=False, default=0)
    first_in: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    first_out: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_in: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_out: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_unix_now)


class TransferLedgerModel(Base):
    """Append-only record of every transfer event applied to stats.

    Rows are never deleted; a reorg flips `retracted` so activity windows can
    be recomputed from the surviving events.
    """

    __tablename__ = "transfer_ledger"

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    txhash_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=False)
    block_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=False)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    token_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # NULL side is the synthetic zero address (mint/burn).
    from_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=True)
    to_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("ids.id"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    retracted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_unix_now)

    __table_args__ = (
        Index("idx_ledger_from_token", "from_id", "token_id", "retracted"),
        Index("idx_ledger_to_token", "to_id", "token_id", "retracted"),
        Index("idx_ledger_block", "block_id", "retracted"),
        Index("idx_ledger_tx", "txhash_id"),
    )
