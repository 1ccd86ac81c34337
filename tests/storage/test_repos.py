"""Tests for storage repositories."""

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from evm_indexer.models import IdentifierKind, TxCategory
from evm_indexer.storage.database import DatabaseManager, normalize_async_database_url
from evm_indexer.storage.repos import (
    BlockDTO,
    BlockRepository,
    IdentifierRepository,
    LedgerRepository,
    StatsRepository,
    TransactionDTO,
    TransactionRepository,
    split_raw_value,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def ids(async_session: AsyncSession) -> dict[str, int]:
    """A handful of interned identifiers for foreign keys."""
    repo = IdentifierRepository(async_session)
    values = {
        "block_a": (b"\xaa" * 32, IdentifierKind.BLOCK_HASH),
        "block_b": (b"\xbb" * 32, IdentifierKind.BLOCK_HASH),
        "tx_1": (b"\x01" * 32, IdentifierKind.TX_HASH),
        "tx_2": (b"\x02" * 32, IdentifierKind.TX_HASH),
        "alice": (b"\x0a" * 20, IdentifierKind.EOA),
        "bob": (b"\x0b" * 20, IdentifierKind.EOA),
    }
    return {name: await repo.insert(raw, kind) for name, (raw, kind) in values.items()}


def _tx(ids: dict[str, int], name: str, block: str, height: int, index: int) -> TransactionDTO:
    return TransactionDTO(
        txhash_id=ids[name],
        block_id=ids[block],
        block_height=height,
        tx_index=index,
        category=TxCategory.ETH_TRANSFER,
        value=5,
        from_id=ids["alice"],
        to_id=ids["bob"],
        gas_limit=21_000,
        gas_price=10**9,
    )


# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:
    def test_split_raw_value(self) -> None:
        raw = bytes(range(20))
        prefix, remainder = split_raw_value(raw)
        assert prefix == bytes(range(16))
        assert remainder == bytes(range(16, 20))

    def test_normalize_async_database_url(self) -> None:
        assert (
            normalize_async_database_url("postgresql://u:p@h/db")
            == "postgresql+asyncpg://u:p@h/db"
        )
        assert normalize_async_database_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"


# ============================================================================
# IdentifierRepository Tests
# ============================================================================


class TestIdentifierRepository:
    @pytest.mark.asyncio
    async def test_find_and_get(self, async_session: AsyncSession) -> None:
        repo = IdentifierRepository(async_session)
        raw = b"\x11" * 20
        identifier_id = await repo.insert(raw, IdentifierKind.EOA)

        assert await repo.find(raw, IdentifierKind.EOA) == identifier_id
        assert await repo.find(raw, IdentifierKind.CONTRACT) is None
        dto = await repo.get(identifier_id)
        assert dto is not None
        assert dto.raw == raw

    @pytest.mark.asyncio
    async def test_duplicate_insert_violates_uniqueness(self, async_session: AsyncSession) -> None:
        repo = IdentifierRepository(async_session)
        await repo.insert(b"\x11" * 20, IdentifierKind.EOA)
        with pytest.raises(IntegrityError):
            await repo.insert(b"\x11" * 20, IdentifierKind.EOA)

    @pytest.mark.asyncio
    async def test_find_address_spans_kinds(self, async_session: AsyncSession) -> None:
        repo = IdentifierRepository(async_session)
        raw = b"\x22" * 20
        assert await repo.find_address(raw) is None

        contract_id = await repo.insert(raw, IdentifierKind.CONTRACT)
        await repo.insert(b"\x22" * 32, IdentifierKind.TX_HASH)
        assert await repo.find_address(raw) == contract_id

        await repo.insert(raw, IdentifierKind.EOA)
        assert await repo.find_address(raw) == contract_id


# ============================================================================
# Block / Transaction Repository Tests
# ============================================================================


class TestBlockRepository:
    @pytest.mark.asyncio
    async def test_insert_and_lookup(self, async_session: AsyncSession, ids) -> None:
        repo = BlockRepository(async_session)
        await repo.insert(BlockDTO(identifier_id=ids["block_a"], height=100, timestamp=1_000))
        await repo.insert(BlockDTO(identifier_id=ids["block_b"], height=101, timestamp=1_012))

        by_height = await repo.get_by_height(100)
        assert by_height is not None
        assert by_height.identifier_id == ids["block_a"]
        latest = await repo.get_latest()
        assert latest is not None and latest.height == 101
        assert [b.height for b in await repo.list_from_height(100)] == [101, 100]

    @pytest.mark.asyncio
    async def test_height_is_unique(self, async_session: AsyncSession, ids) -> None:
        repo = BlockRepository(async_session)
        await repo.insert(BlockDTO(identifier_id=ids["block_a"], height=100, timestamp=1_000))
        with pytest.raises(IntegrityError):
            await repo.insert(BlockDTO(identifier_id=ids["block_b"], height=100, timestamp=1_000))

    @pytest.mark.asyncio
    async def test_delete(self, async_session: AsyncSession, ids) -> None:
        repo = BlockRepository(async_session)
        await repo.insert(BlockDTO(identifier_id=ids["block_a"], height=100, timestamp=1_000))
        assert await repo.delete(ids["block_a"]) is True
        assert await repo.get(ids["block_a"]) is None


class TestTransactionRepository:
    @pytest.mark.asyncio
    async def test_insert_and_delete_for_block(self, async_session: AsyncSession, ids) -> None:
        await BlockRepository(async_session).insert(
            BlockDTO(identifier_id=ids["block_a"], height=100, timestamp=1_000)
        )
        repo = TransactionRepository(async_session)
        await repo.insert(_tx(ids, "tx_1", "block_a", 100, 0))
        await repo.insert_eth_transfer(
            txhash_id=ids["tx_1"], value=5, from_id=ids["alice"], to_id=ids["bob"]
        )
        await repo.insert(_tx(ids, "tx_2", "block_a", 100, 1))

        listed = await repo.list_for_block(ids["block_a"])
        assert [t.tx_index for t in listed] == [0, 1]
        assert listed[0].category == TxCategory.ETH_TRANSFER
        assert listed[0].value == 5

        assert await repo.delete_for_block(ids["block_a"]) == 2
        assert await repo.get(ids["tx_1"]) is None

    @pytest.mark.asyncio
    async def test_generic_call_fields(self, async_session: AsyncSession, ids) -> None:
        await BlockRepository(async_session).insert(
            BlockDTO(identifier_id=ids["block_a"], height=100, timestamp=1_000)
        )
        repo = TransactionRepository(async_session)
        dto = _tx(ids, "tx_1", "block_a", 100, 0)
        dto.category = TxCategory.GENERIC_CALL
        dto.method_id = 0x095EA7B3
        dto.params = b"\x00" * 64
        await repo.insert(dto)

        stored = await repo.get(ids["tx_1"])
        assert stored is not None
        assert stored.method_id == 0x095EA7B3
        assert stored.params == b"\x00" * 64


# ============================================================================
# Stats / Ledger Repository Tests
# ============================================================================


class TestStatsAndLedger:
    @pytest.mark.asyncio
    async def test_stats_create_and_delete(self, async_session: AsyncSession, ids) -> None:
        repo = StatsRepository(async_session)
        row = await repo.create(ids["alice"], 0)
        row.balance = row.balance + 7
        await async_session.flush()

        dto = await repo.get(ids["alice"], 0)
        assert dto is not None and dto.balance == 7
        assert [s.token_id for s in await repo.list_for_address(ids["alice"])] == [0]

        await repo.delete_model(row)
        assert await repo.get(ids["alice"], 0) is None

    @pytest.mark.asyncio
    async def test_activity_window_ignores_retracted(
        self, async_session: AsyncSession, ids
    ) -> None:
        ledger = LedgerRepository(async_session)
        common = {"block_height": 100, "token_id": 0, "amount": 1}
        first = await ledger.append(
            txhash_id=ids["tx_1"],
            block_id=ids["block_a"],
            from_id=ids["alice"],
            to_id=ids["bob"],
            timestamp=1_000,
            **common,
        )
        await ledger.append(
            txhash_id=ids["tx_2"],
            block_id=ids["block_b"],
            from_id=None,
            to_id=ids["bob"],
            timestamp=2_000,
            **common,
        )

        window = await ledger.activity_window(ids["bob"], 0)
        assert (window.first_in, window.last_in) == (1_000, 2_000)
        assert window.first_out is None

        await ledger.mark_retracted(first)
        window = await ledger.activity_window(ids["bob"], 0)
        assert (window.first_in, window.last_in) == (2_000, 2_000)
        assert (await ledger.activity_window(ids["alice"], 0)).is_empty

    @pytest.mark.asyncio
    async def test_find_active_matches_null_side(self, async_session: AsyncSession, ids) -> None:
        ledger = LedgerRepository(async_session)
        await ledger.append(
            txhash_id=ids["tx_1"],
            block_id=ids["block_a"],
            block_height=100,
            token_id=0,
            from_id=None,
            to_id=ids["bob"],
            amount=3,
            timestamp=1_000,
        )

        found = await ledger.find_active(
            txhash_id=ids["tx_1"], block_id=ids["block_a"], token_id=0, from_id=None, to_id=ids["bob"]
        )
        assert found is not None and found.amount == 3
        assert (
            await ledger.find_active(
                txhash_id=ids["tx_1"],
                block_id=ids["block_a"],
                token_id=0,
                from_id=ids["alice"],
                to_id=ids["bob"],
            )
            is None
        )


# ============================================================================
# DatabaseManager Tests
# ============================================================================


class TestDatabaseManager:
    @pytest.mark.asyncio
    async def test_session_rolls_back_on_error(self, database_url: str) -> None:
        db = DatabaseManager(database_url)
        await db.init_schema_async()
        try:
            with pytest.raises(RuntimeError):
                async with db.get_async_session() as session:
                    await IdentifierRepository(session).insert(b"\x22" * 20, IdentifierKind.EOA)
                    raise RuntimeError("boom")

            async with db.get_async_session() as session:
                assert await IdentifierRepository(session).count() == 0
        finally:
            await db.dispose_async()
