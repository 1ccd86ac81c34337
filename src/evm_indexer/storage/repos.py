"""Repository pattern implementations for data access.

This module provides data access abstractions over the interned schema.
Repositories never commit; transaction boundaries belong to the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from evm_indexer.models import IdentifierKind, TxCategory
from evm_indexer.storage.models import (
    PREFIX_WIDTH,
    AddressTokenStatsModel,
    BlockModel,
    ContractDeploymentModel,
    Erc20TokenModel,
    Erc20TransferModel,
    EthTransferModel,
    IdentifierModel,
    NicknameModel,
    TransactionModel,
    TransferLedgerModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def split_raw_value(raw: bytes) -> tuple[bytes, bytes]:
    """Split a raw value into its indexed prefix and the remainder."""
    return raw[:PREFIX_WIDTH], raw[PREFIX_WIDTH:]


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT construct (for ON CONFLICT support)."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _opt_int(value: Decimal | int | None) -> int | None:
    return int(value) if value is not None else None


# ============================================================================
# DTOs
# ============================================================================


@dataclass
class IdentifierDTO:
    """Data transfer object for interned identifiers."""

    id: int
    raw: bytes
    kind: IdentifierKind
    created_at: int

    @classmethod
    def from_model(cls, model: IdentifierModel) -> IdentifierDTO:
        return cls(
            id=model.id,
            raw=bytes(model.prefix) + bytes(model.remainder),
            kind=IdentifierKind(model.id_type),
            created_at=model.created_at,
        )


@dataclass
class NicknameDTO:
    """Data transfer object for identifier nicknames."""

    identifier_id: int
    nick: str
    nick_type: int

    @classmethod
    def from_model(cls, model: NicknameModel) -> NicknameDTO:
        return cls(identifier_id=model.identifier_id, nick=model.nick, nick_type=model.nick_type)


@dataclass
class TokenDTO:
    """Data transfer object for ERC20 token metadata."""

    identifier_id: int
    name: str
    symbol: str
    decimals: int
    supply: int

    @classmethod
    def from_model(cls, model: Erc20TokenModel) -> TokenDTO:
        return cls(
            identifier_id=model.identifier_id,
            name=model.token_name,
            symbol=model.symbol,
            decimals=model.decimals,
            supply=int(model.supply),
        )


@dataclass
class BlockDTO:
    """Data transfer object for committed blocks."""

    identifier_id: int
    height: int
    timestamp: int
    parent_id: int | None = None
    tx_count: int = 0

    @classmethod
    def from_model(cls, model: BlockModel) -> BlockDTO:
        return cls(
            identifier_id=model.identifier_id,
            height=model.height,
            timestamp=model.timestamp,
            parent_id=model.parent_id,
            tx_count=model.tx_count,
        )


@dataclass
class TransactionDTO:
    """Data transfer object for the generic transaction record."""

    txhash_id: int
    block_id: int
    block_height: int
    tx_index: int
    category: TxCategory
    value: int
    from_id: int
    to_id: int | None
    gas_limit: int
    gas_price: int
    method_id: int | None = None
    params: bytes | None = None

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            txhash_id=model.txhash_id,
            block_id=model.block_id,
            block_height=model.block_height,
            tx_index=model.tx_index,
            category=TxCategory(model.category),
            value=int(model.tx_value),
            from_id=model.from_id,
            to_id=model.to_id,
            gas_limit=model.gas_limit,
            gas_price=int(model.gas_price),
            method_id=model.method_id,
            params=bytes(model.params) if model.params is not None else None,
        )


@dataclass
class StatsDTO:
    """Current balance and activity window of an (address, token) pair."""

    address_id: int
    token_id: int
    balance: int
    first_in: int | None = None
    first_out: int | None = None
    last_in: int | None = None
    last_out: int | None = None

    @classmethod
    def from_model(cls, model: AddressTokenStatsModel) -> StatsDTO:
        return cls(
            address_id=model.address_id,
            token_id=model.token_id,
            balance=int(model.balance),
            first_in=model.first_in,
            first_out=model.first_out,
            last_in=model.last_in,
            last_out=model.last_out,
        )


@dataclass
class LedgerEntryDTO:
    """Data transfer object for transfer ledger rows."""

    id: int
    txhash_id: int
    block_id: int
    block_height: int
    token_id: int
    from_id: int | None
    to_id: int | None
    amount: int
    timestamp: int
    retracted: bool

    @classmethod
    def from_model(cls, model: TransferLedgerModel) -> LedgerEntryDTO:
        return cls(
            id=model.id,
            txhash_id=model.txhash_id,
            block_id=model.block_id,
            block_height=model.block_height,
            token_id=model.token_id,
            from_id=model.from_id,
            to_id=model.to_id,
            amount=int(model.amount),
            timestamp=model.timestamp,
            retracted=model.retracted,
        )


@dataclass(frozen=True)
class ActivityWindow:
    """First/last timestamps recomputed from surviving ledger events."""

    first_in: int | None
    last_in: int | None
    first_out: int | None
    last_out: int | None

    @property
    def is_empty(self) -> bool:
        return self.first_in is None and self.first_out is None


# ============================================================================
# Repositories
# ============================================================================


class IdentifierRepository:
    """Low-level access to the `ids` arena. Only the registry should use it."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find(self, raw: bytes, kind: IdentifierKind) -> int | None:
        """Look up candidates by (prefix, kind) and verify the remainder."""
        prefix, remainder = split_raw_value(raw)
        result = await self.session.execute(
            select(IdentifierModel.id, IdentifierModel.remainder).where(
                IdentifierModel.prefix == prefix,
                IdentifierModel.id_type == kind,
            )
        )
        for identifier_id, candidate in result.all():
            if bytes(candidate) == remainder:
                return int(identifier_id)
        return None

    async def find_address(self, raw: bytes) -> int | None:
        """Oldest id of an address across the EOA and CONTRACT kinds."""
        prefix, remainder = split_raw_value(raw)
        result = await self.session.execute(
            select(IdentifierModel.id, IdentifierModel.remainder)
            .where(
                IdentifierModel.prefix == prefix,
                IdentifierModel.id_type.in_([IdentifierKind.EOA, IdentifierKind.CONTRACT]),
            )
            .order_by(IdentifierModel.id.asc())
        )
        for identifier_id, candidate in result.all():
            if bytes(candidate) == remainder:
                return int(identifier_id)
        return None

    async def insert(self, raw: bytes, kind: IdentifierKind) -> int:
        """Insert a new identifier row and return its id.

        Raises:
            IntegrityError if (raw, kind) already exists.
        """
        prefix, remainder = split_raw_value(raw)
        model = IdentifierModel(
            prefix=prefix,
            remainder=remainder,
            id_type=kind,
            created_at=int(time.time()),
        )
        self.session.add(model)
        await self.session.flush()
        return int(model.id)

    async def get(self, identifier_id: int) -> IdentifierDTO | None:
        model = await self.session.get(IdentifierModel, identifier_id)
        return IdentifierDTO.from_model(model) if model else None

    async def count(self, kind: IdentifierKind | None = None) -> int:
        stmt = select(func.count()).select_from(IdentifierModel)
        if kind is not None:
            stmt = stmt.where(IdentifierModel.id_type == kind)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


class NicknameRepository:
    """Repository for identifier nicknames (append-only)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(self, dto: NicknameDTO) -> NicknameDTO:
        self.session.add(
            NicknameModel(identifier_id=dto.identifier_id, nick=dto.nick, nick_type=dto.nick_type)
        )
        await self.session.flush()
        return dto

    async def list_for(self, identifier_id: int) -> list[NicknameDTO]:
        result = await self.session.execute(
            select(NicknameModel)
            .where(NicknameModel.identifier_id == identifier_id)
            .order_by(NicknameModel.id.asc())
        )
        return [NicknameDTO.from_model(m) for m in result.scalars().all()]


class TokenRepository:
    """Repository for ERC20 token metadata."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, identifier_id: int) -> TokenDTO | None:
        model = await self.session.get(Erc20TokenModel, identifier_id)
        return TokenDTO.from_model(model) if model else None

    async def upsert(self, dto: TokenDTO) -> TokenDTO:
        """Insert or update token metadata keyed by identifier id (idempotent)."""
        now = int(time.time())
        values = {
            "identifier_id": dto.identifier_id,
            "token_name": dto.name[:255],
            "symbol": dto.symbol[:100],
            "decimals": dto.decimals,
            "supply": Decimal(dto.supply),
            "updated_at": now,
        }
        stmt = _insert_for(self.session, Erc20TokenModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["identifier_id"],
            set_={
                "token_name": stmt.excluded.token_name,
                "symbol": stmt.excluded.symbol,
                "decimals": stmt.excluded.decimals,
                "supply": stmt.excluded.supply,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def missing(self, identifier_ids: list[int]) -> list[int]:
        """Return the ids from `identifier_ids` that have no metadata yet."""
        if not identifier_ids:
            return []
        result = await self.session.execute(
            select(Erc20TokenModel.identifier_id).where(
                Erc20TokenModel.identifier_id.in_(identifier_ids)
            )
        )
        known = {int(i) for i in result.scalars().all()}
        return [i for i in identifier_ids if i not in known]


class BlockRepository:
    """Repository for committed blocks."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, identifier_id: int) -> BlockDTO | None:
        model = await self.session.get(BlockModel, identifier_id)
        return BlockDTO.from_model(model) if model else None

    async def get_by_height(self, height: int) -> BlockDTO | None:
        result = await self.session.execute(select(BlockModel).where(BlockModel.height == height))
        model = result.scalar_one_or_none()
        return BlockDTO.from_model(model) if model else None

    async def get_latest(self) -> BlockDTO | None:
        result = await self.session.execute(
            select(BlockModel).order_by(BlockModel.height.desc()).limit(1)
        )
        model = result.scalar_one_or_none()
        return BlockDTO.from_model(model) if model else None

    async def list_from_height(self, height: int) -> list[BlockDTO]:
        """Blocks at or above `height`, highest first."""
        result = await self.session.execute(
            select(BlockModel).where(BlockModel.height >= height).order_by(BlockModel.height.desc())
        )
        return [BlockDTO.from_model(m) for m in result.scalars().all()]

    async def insert(self, dto: BlockDTO) -> BlockDTO:
        self.session.add(
            BlockModel(
                identifier_id=dto.identifier_id,
                height=dto.height,
                timestamp=dto.timestamp,
                parent_id=dto.parent_id,
                tx_count=dto.tx_count,
            )
        )
        await self.session.flush()
        return dto

    async def delete(self, identifier_id: int) -> bool:
        result = await self.session.execute(
            delete(BlockModel).where(BlockModel.identifier_id == identifier_id)
        )
        await self.session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


class TransactionRepository:
    """Repository for the generic transaction table and its category subtypes."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, txhash_id: int) -> TransactionDTO | None:
        model = await self.session.get(TransactionModel, txhash_id)
        return TransactionDTO.from_model(model) if model else None

    async def list_for_block(self, block_id: int) -> list[TransactionDTO]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.block_id == block_id)
            .order_by(TransactionModel.tx_index.asc())
        )
        return [TransactionDTO.from_model(m) for m in result.scalars().all()]

    async def insert(self, dto: TransactionDTO) -> TransactionDTO:
        self.session.add(
            TransactionModel(
                txhash_id=dto.txhash_id,
                block_id=dto.block_id,
                block_height=dto.block_height,
                tx_index=dto.tx_index,
                category=dto.category,
                tx_value=Decimal(dto.value),
                from_id=dto.from_id,
                to_id=dto.to_id,
                gas_limit=dto.gas_limit,
                gas_price=Decimal(dto.gas_price),
                method_id=dto.method_id,
                params=dto.params,
            )
        )
        await self.session.flush()
        return dto

    async def insert_eth_transfer(
        self, *, txhash_id: int, value: int, from_id: int, to_id: int
    ) -> None:
        self.session.add(
            EthTransferModel(
                txhash_id=txhash_id, tx_value=Decimal(value), from_id=from_id, to_id=to_id
            )
        )
        await self.session.flush()

    async def insert_erc20_transfer(
        self, *, txhash_id: int, token_id: int, from_id: int, to_id: int, value: int
    ) -> None:
        self.session.add(
            Erc20TransferModel(
                txhash_id=txhash_id,
                token_id=token_id,
                from_id=from_id,
                to_id=to_id,
                tx_value=Decimal(value),
            )
        )
        await self.session.flush()

    async def insert_contract_deployment(
        self, *, txhash_id: int, address_id: int | None, deployer_id: int, bytecode: bytes
    ) -> None:
        self.session.add(
            ContractDeploymentModel(
                txhash_id=txhash_id,
                address_id=address_id,
                deployer_id=deployer_id,
                bytecode=bytecode,
            )
        )
        await self.session.flush()

    async def delete_for_block(self, block_id: int) -> int:
        """Delete generic and category rows of a block. Returns generic rows removed."""
        tx_ids = select(TransactionModel.txhash_id).where(TransactionModel.block_id == block_id)
        for model in (EthTransferModel, Erc20TransferModel, ContractDeploymentModel):
            await self.session.execute(delete(model).where(model.txhash_id.in_(tx_ids)))
        result = await self.session.execute(
            delete(TransactionModel).where(TransactionModel.block_id == block_id)
        )
        await self.session.flush()
        return int(result.rowcount or 0)  # type: ignore[attr-defined]


class StatsRepository:
    """Repository for per-(address, token) stats rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, address_id: int, token_id: int) -> StatsDTO | None:
        model = await self.get_model(address_id, token_id)
        return StatsDTO.from_model(model) if model else None

    async def get_model(
        self, address_id: int, token_id: int, *, for_update: bool = False
    ) -> AddressTokenStatsModel | None:
        stmt = select(AddressTokenStatsModel).where(
            AddressTokenStatsModel.address_id == address_id,
            AddressTokenStatsModel.token_id == token_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, address_id: int, token_id: int) -> AddressTokenStatsModel:
        model = AddressTokenStatsModel(address_id=address_id, token_id=token_id, balance=Decimal(0))
        self.session.add(model)
        await self.session.flush()
        return model

    async def delete_model(self, model: AddressTokenStatsModel) -> None:
        await self.session.delete(model)
        await self.session.flush()

    async def list_for_address(self, address_id: int) -> list[StatsDTO]:
        result = await self.session.execute(
            select(AddressTokenStatsModel)
            .where(AddressTokenStatsModel.address_id == address_id)
            .order_by(AddressTokenStatsModel.token_id.asc())
        )
        return [StatsDTO.from_model(m) for m in result.scalars().all()]


class LedgerRepository:
    """Repository for the append-only transfer ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        *,
        txhash_id: int,
        block_id: int,
        block_height: int,
        token_id: int,
        from_id: int | None,
        to_id: int | None,
        amount: int,
        timestamp: int,
    ) -> int:
        model = TransferLedgerModel(
            txhash_id=txhash_id,
            block_id=block_id,
            block_height=block_height,
            token_id=token_id,
            from_id=from_id,
            to_id=to_id,
            amount=Decimal(amount),
            timestamp=timestamp,
            retracted=False,
        )
        self.session.add(model)
        await self.session.flush()
        return int(model.id)

    async def find_active(
        self,
        *,
        txhash_id: int,
        block_id: int,
        token_id: int,
        from_id: int | None,
        to_id: int | None,
    ) -> LedgerEntryDTO | None:
        """Newest non-retracted ledger row matching a transfer event."""
        stmt = select(TransferLedgerModel).where(
            TransferLedgerModel.txhash_id == txhash_id,
            TransferLedgerModel.block_id == block_id,
            TransferLedgerModel.token_id == token_id,
            TransferLedgerModel.retracted.is_(False),
        )
        stmt = stmt.where(
            TransferLedgerModel.from_id.is_(None)
            if from_id is None
            else TransferLedgerModel.from_id == from_id
        )
        stmt = stmt.where(
            TransferLedgerModel.to_id.is_(None)
            if to_id is None
            else TransferLedgerModel.to_id == to_id
        )
        result = await self.session.execute(stmt.order_by(TransferLedgerModel.id.desc()).limit(1))
        model = result.scalar_one_or_none()
        return LedgerEntryDTO.from_model(model) if model else None

    async def list_active_for_block(self, block_id: int) -> list[LedgerEntryDTO]:
        """Surviving events of a block, newest first."""
        result = await self.session.execute(
            select(TransferLedgerModel)
            .where(
                TransferLedgerModel.block_id == block_id,
                TransferLedgerModel.retracted.is_(False),
            )
            .order_by(TransferLedgerModel.id.desc())
        )
        return [LedgerEntryDTO.from_model(m) for m in result.scalars().all()]

    async def mark_retracted(self, entry_id: int) -> None:
        await self.session.execute(
            update(TransferLedgerModel)
            .where(TransferLedgerModel.id == entry_id)
            .values(retracted=True)
        )
        await self.session.flush()

    async def activity_window(self, address_id: int, token_id: int) -> ActivityWindow:
        """Recompute first/last in/out timestamps from surviving events of one pair."""
        min_ts = func.min(TransferLedgerModel.timestamp)
        max_ts = func.max(TransferLedgerModel.timestamp)
        incoming = await self.session.execute(
            select(min_ts, max_ts).where(
                TransferLedgerModel.to_id == address_id,
                TransferLedgerModel.token_id == token_id,
                TransferLedgerModel.retracted.is_(False),
            )
        )
        first_in, last_in = incoming.one()
        outgoing = await self.session.execute(
            select(min_ts, max_ts).where(
                TransferLedgerModel.from_id == address_id,
                TransferLedgerModel.token_id == token_id,
                TransferLedgerModel.retracted.is_(False),
            )
        )
        first_out, last_out = outgoing.one()
        return ActivityWindow(
            first_in=_opt_int(first_in),
            last_in=_opt_int(last_in),
            first_out=_opt_int(first_out),
            last_out=_opt_int(last_out),
        )
