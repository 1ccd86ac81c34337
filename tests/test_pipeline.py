"""Tests for the main pipeline orchestrator."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from conftest import address, block_hash, tx_hash

from evm_indexer.aggregator import StatsAggregator
from evm_indexer.classifier import ERC20_TRANSFER_SELECTOR
from evm_indexer.config import Settings
from evm_indexer.errors import BlockCommitError, ReorgConflict, StorageUnavailable
from evm_indexer.ingestor.chain import RPCError, TokenMetadata
from evm_indexer.ingestor.models import RawBlock, RawTransaction, ReorgNotification
from evm_indexer.models import BlockState, IdentifierKind
from evm_indexer.pipeline import Pipeline, PipelineState
from evm_indexer.storage.database import DatabaseManager

A, B, C = address(0xA), address(0xB), address(0xC)
TOKEN = address(0x70)


def make_tx(
    n: int, sender: bytes = A, to: bytes | None = B, value: int = 5, tx_index: int = 0, **kw
) -> RawTransaction:
    return RawTransaction(
        hash=tx_hash(n),
        from_address=sender,
        to_address=to,
        value=value,
        gas_limit=21_000,
        gas_price=10**9,
        tx_index=tx_index,
        **kw,
    )


def make_block(
    height: int, *txs: RawTransaction, fork: int = 0, parent_fork: int | None = None
) -> RawBlock:
    """Block at height; `fork` offsets the hash so competing blocks differ."""
    parent_fork = fork if parent_fork is None else parent_fork
    return RawBlock(
        height=height,
        hash=block_hash(height + fork),
        parent_hash=block_hash(height - 1 + parent_fork),
        timestamp=1_000 + 12 * height,
        transactions=txs,
    )


def erc20_calldata(recipient: bytes, amount: int) -> bytes:
    return ERC20_TRANSFER_SELECTOR + bytes(12) + recipient + amount.to_bytes(32, "big")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch, database_url: str) -> pytest.MonkeyPatch:
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("INGEST_RETRY_DELAY_SECONDS", "0")
    monkeypatch.setenv("INGEST_MAX_COMMIT_ATTEMPTS", "2")
    monkeypatch.setenv("INGEST_MAX_REORG_DEPTH", "4")
    monkeypatch.setenv("INGEST_FETCH_TOKEN_METADATA", "false")
    return monkeypatch


@pytest.fixture
async def db(database_url: str) -> DatabaseManager:
    manager = DatabaseManager(database_url)
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def client() -> AsyncMock:
    mock = AsyncMock()
    mock.get_erc20_metadata = AsyncMock(
        return_value=TokenMetadata(name="Token", symbol="TKN", decimals=18, total_supply=10**6)
    )
    return mock


@pytest.fixture
async def pipeline(env, db: DatabaseManager, client: AsyncMock) -> Pipeline:
    async with Pipeline(Settings(), db_manager=db, client=client) as p:
        yield p


# ============================================================================
# Lifecycle Tests
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager(self, env, db: DatabaseManager, client: AsyncMock) -> None:
        p = Pipeline(Settings(), db_manager=db, client=client)
        assert p.state == PipelineState.STOPPED

        async with p:
            assert p.is_running
            assert p.stats.started_at is not None

        assert p.state == PipelineState.STOPPED
        client.aclose.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_twice(self, pipeline: Pipeline) -> None:
        with pytest.raises(RuntimeError, match="Cannot start pipeline"):
            await pipeline.start()

    @pytest.mark.asyncio
    async def test_requires_start(self, env, db: DatabaseManager, client: AsyncMock) -> None:
        p = Pipeline(Settings(), db_manager=db, client=client)
        with pytest.raises(RuntimeError):
            await p.process_block(make_block(100))


# ============================================================================
# Block Processing Tests
# ============================================================================


class TestProcessBlock:
    @pytest.mark.asyncio
    async def test_eth_transfer(self, pipeline: Pipeline) -> None:
        assert await pipeline.process_block(make_block(100, make_tx(1))) == BlockState.COMMITTED

        sender = await pipeline.stats_of(A)
        receiver = await pipeline.stats_of(B)
        assert sender is not None and receiver is not None
        assert sender.balance == -5
        assert receiver.balance == 5
        assert receiver.first_in == receiver.last_in == 2_200
        assert await pipeline.latest_stored_height() == 100
        assert pipeline.stats.blocks_committed == 1
        assert pipeline.stats.transfers_applied == 1

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, pipeline: Pipeline) -> None:
        block = make_block(100, make_tx(1))
        await pipeline.process_block(block)
        assert await pipeline.process_block(block) == BlockState.COMMITTED

        receiver = await pipeline.stats_of(B)
        assert receiver is not None
        assert receiver.balance == 5
        assert pipeline.stats.blocks_skipped == 1

    @pytest.mark.asyncio
    async def test_competing_block_replaces_stats(self, pipeline: Pipeline) -> None:
        await pipeline.process_block(make_block(99, make_tx(1, value=3)))
        before = await pipeline.stats_of(B)

        await pipeline.process_block(make_block(100, make_tx(2, value=5)))
        await pipeline.process_block(
            make_block(100, make_tx(3, to=C, value=7), fork=1000, parent_fork=0)
        )

        assert await pipeline.stats_of(B) == before
        sender = await pipeline.stats_of(A)
        receiver = await pipeline.stats_of(C)
        assert sender is not None and receiver is not None
        assert sender.balance == -10
        assert receiver.balance == 7
        assert pipeline.stats.blocks_retracted == 1

    @pytest.mark.asyncio
    async def test_erc20_transfer(self, pipeline: Pipeline) -> None:
        tx = make_tx(1, to=TOKEN, value=0, input=erc20_calldata(C, 1000))
        await pipeline.process_block(make_block(100, tx))

        receiver = await pipeline.stats_of(C, TOKEN)
        assert receiver is not None
        assert receiver.balance == 1000
        assert await pipeline.stats_of(C) is None
        assert await pipeline.identifier_of(TOKEN, IdentifierKind.CONTRACT) is not None

    @pytest.mark.asyncio
    async def test_zero_value_transfer_records_activity(self, pipeline: Pipeline) -> None:
        await pipeline.process_block(make_block(100, make_tx(1, value=0)))

        receiver = await pipeline.stats_of(B)
        assert receiver is not None
        assert receiver.balance == 0
        assert receiver.first_in == 2_200

    @pytest.mark.asyncio
    async def test_deployment_and_generic_call(self, pipeline: Pipeline) -> None:
        deploy = make_tx(
            1,
            to=None,
            value=0,
            input=b"\x60\x80",
            contract_address=C,
            deployed_bytecode=b"\xfe\xed",
        )
        call = make_tx(2, to=C, value=0, input=bytes.fromhex("095ea7b3") + bytes(64), tx_index=1)
        await pipeline.process_block(make_block(100, deploy, call))

        assert pipeline.stats.transactions_written == 2
        assert pipeline.stats.transfers_applied == 0
        assert await pipeline.identifier_of(C, IdentifierKind.CONTRACT) is not None
        assert await pipeline.identifier_of(C, IdentifierKind.EOA) is None

    @pytest.mark.asyncio
    async def test_malformed_transaction_is_rejected(self, pipeline: Pipeline) -> None:
        bad = make_tx(1, sender=b"\x01" * 19)
        good = make_tx(2, tx_index=1)
        await pipeline.process_block(make_block(100, bad, good))

        assert pipeline.stats.transactions_rejected == 1
        assert pipeline.stats.transactions_written == 1
        receiver = await pipeline.stats_of(B)
        assert receiver is not None and receiver.balance == 5

    @pytest.mark.asyncio
    async def test_storage_failure_rolls_back(self, pipeline: Pipeline) -> None:
        block = make_block(100, make_tx(1))
        with patch.object(
            StatsAggregator, "apply", AsyncMock(side_effect=StorageUnavailable("db down"))
        ):
            with pytest.raises(BlockCommitError) as exc_info:
                await pipeline.process_block(block)

        assert exc_info.value.height == 100
        assert pipeline.stats.errors == 2
        assert await pipeline.latest_stored_height() is None
        assert await pipeline.stats_of(B) is None

        await pipeline.process_block(block)
        receiver = await pipeline.stats_of(B)
        assert receiver is not None and receiver.balance == 5

    @pytest.mark.asyncio
    async def test_cancellation_rolls_back(self, pipeline: Pipeline) -> None:
        block = make_block(100, make_tx(1))
        entered = asyncio.Event()

        async def hang(*_args, **_kwargs) -> None:
            entered.set()
            await asyncio.Event().wait()

        with patch.object(StatsAggregator, "apply", hang):
            task = asyncio.create_task(pipeline.process_block(block))
            await entered.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert await pipeline.latest_stored_height() is None
        assert await pipeline.stats_of(B) is None

        assert await pipeline.process_block(block) == BlockState.COMMITTED
        receiver = await pipeline.stats_of(B)
        assert receiver is not None and receiver.balance == 5


class TestAddressKinds:
    """Balances of one address stay on one row whatever kind it was seen as."""

    @pytest.mark.asyncio
    async def test_called_recipient_keeps_one_balance(self, pipeline: Pipeline) -> None:
        call = make_tx(2, to=C, value=0, input=bytes.fromhex("095ea7b3") + bytes(64))
        await pipeline.process_block(make_block(100, make_tx(1, to=C, value=5)))
        await pipeline.process_block(make_block(101, call))
        await pipeline.process_block(make_block(102, make_tx(3, to=C, value=7)))

        eoa_id = await pipeline.identifier_of(C, IdentifierKind.EOA)
        contract_id = await pipeline.identifier_of(C, IdentifierKind.CONTRACT)
        assert eoa_id is not None and contract_id is not None
        assert await pipeline.registry.address_id_of(C) == min(eoa_id, contract_id)

        receiver = await pipeline.stats_of(C)
        assert receiver is not None
        assert receiver.balance == 12
        assert receiver.first_in == 2_200
        assert receiver.last_in == 2_224

    @pytest.mark.asyncio
    async def test_contract_funded_in_deploy_block(self, pipeline: Pipeline) -> None:
        deploy = make_tx(
            1,
            to=None,
            value=0,
            input=b"\x60\x80",
            contract_address=C,
            deployed_bytecode=b"\xfe\xed",
        )
        await pipeline.process_block(make_block(100, deploy, make_tx(2, to=C, value=9, tx_index=1)))
        await pipeline.process_block(make_block(101, make_tx(3, to=C, value=1)))

        assert await pipeline.identifier_of(C, IdentifierKind.EOA) is None
        receiver = await pipeline.stats_of(C)
        assert receiver is not None and receiver.balance == 10

    @pytest.mark.asyncio
    async def test_reorg_retracts_across_kinds(self, pipeline: Pipeline) -> None:
        call = make_tx(2, to=C, value=0, input=bytes.fromhex("095ea7b3") + bytes(64))
        await pipeline.process_block(make_block(100, make_tx(1, to=C, value=5)))
        await pipeline.process_block(make_block(101, call))
        await pipeline.process_block(make_block(102, make_tx(3, to=C, value=7)))

        await pipeline.process_block(make_block(102, fork=50, parent_fork=0))

        receiver = await pipeline.stats_of(C)
        assert receiver is not None and receiver.balance == 5


class TestTokenEnrichment:
    @pytest.mark.asyncio
    async def test_fetches_metadata_once(self, env, db: DatabaseManager, client: AsyncMock) -> None:
        env.setenv("INGEST_FETCH_TOKEN_METADATA", "true")
        async with Pipeline(Settings(), db_manager=db, client=client) as p:
            await p.process_block(
                make_block(100, make_tx(1, to=TOKEN, value=0, input=erc20_calldata(C, 10)))
            )
            await p.process_block(
                make_block(101, make_tx(2, to=TOKEN, value=0, input=erc20_calldata(B, 1)))
            )

            token_id = await p.identifier_of(TOKEN, IdentifierKind.CONTRACT)
            assert token_id is not None
            token = await p.registry.token_of(token_id)

        assert token is not None
        assert token.symbol == "TKN"
        client.get_erc20_metadata.assert_awaited_once_with(TOKEN)

    @pytest.mark.asyncio
    async def test_failure_does_not_block_commit(
        self, env, db: DatabaseManager, client: AsyncMock
    ) -> None:
        env.setenv("INGEST_FETCH_TOKEN_METADATA", "true")
        client.get_erc20_metadata = AsyncMock(side_effect=RPCError("node down"))
        async with Pipeline(Settings(), db_manager=db, client=client) as p:
            await p.process_block(
                make_block(100, make_tx(1, to=TOKEN, value=0, input=erc20_calldata(C, 10)))
            )
            assert await p.latest_stored_height() == 100


# ============================================================================
# Reorg Tests
# ============================================================================


class TestHandleReorg:
    @pytest.mark.asyncio
    async def test_retracts_block_and_descendants(self, pipeline: Pipeline) -> None:
        await pipeline.process_block(make_block(100, make_tx(1)))
        await pipeline.process_block(make_block(101, make_tx(2, to=C, value=2)))

        retracted = await pipeline.handle_reorg(
            ReorgNotification(
                old_height=100,
                old_hash=block_hash(100),
                new_height=100,
                new_hash=block_hash(1100),
            )
        )

        assert retracted == 2
        assert await pipeline.latest_stored_height() is None
        assert await pipeline.stats_of(B) is None
        assert await pipeline.stats_of(C) is None

    @pytest.mark.asyncio
    async def test_unknown_block_conflicts(self, pipeline: Pipeline) -> None:
        await pipeline.process_block(make_block(100, make_tx(1)))

        with pytest.raises(ReorgConflict):
            await pipeline.handle_reorg(
                ReorgNotification(
                    old_height=100,
                    old_hash=block_hash(555),
                    new_height=100,
                    new_hash=block_hash(1100),
                )
            )
        assert await pipeline.latest_stored_height() == 100


# ============================================================================
# Sync Tests
# ============================================================================


def serve(client: AsyncMock, chain: dict[int, RawBlock]) -> None:
    async def get_block(height: int, *, cacheable: bool = False) -> RawBlock:
        return chain[height]

    client.get_block = AsyncMock(side_effect=get_block)


class TestSync:
    @pytest.mark.asyncio
    async def test_sync_range(self, pipeline: Pipeline, client: AsyncMock) -> None:
        serve(client, {h: make_block(h, make_tx(h, tx_index=0)) for h in range(100, 103)})

        assert await pipeline.sync(100, 102) == 102
        assert pipeline.stats.blocks_committed == 3
        receiver = await pipeline.stats_of(B)
        assert receiver is not None and receiver.balance == 15

    @pytest.mark.asyncio
    async def test_empty_range(self, pipeline: Pipeline) -> None:
        assert await pipeline.sync(5, 4) is None

    @pytest.mark.asyncio
    async def test_walks_back_through_fork(self, pipeline: Pipeline, client: AsyncMock) -> None:
        serve(client, {h: make_block(h, make_tx(h)) for h in (100, 101)})
        await pipeline.sync(100, 101)

        fork = {
            100: make_block(100, make_tx(200, to=C), fork=1000, parent_fork=0),
            101: make_block(101, fork=1000),
            102: make_block(102, fork=1000),
        }
        serve(client, fork)

        assert await pipeline.sync(102, 102) == 102
        assert await pipeline.stats_of(B) is None
        receiver = await pipeline.stats_of(C)
        assert receiver is not None and receiver.balance == 5
        assert pipeline.stats.blocks_retracted == 2

    @pytest.mark.asyncio
    async def test_fork_deeper_than_limit(
        self, env, db: DatabaseManager, client: AsyncMock
    ) -> None:
        env.setenv("INGEST_MAX_REORG_DEPTH", "1")
        async with Pipeline(Settings(), db_manager=db, client=client) as p:
            serve(client, {h: make_block(h) for h in (100, 101)})
            await p.sync(100, 101)

            serve(client, {h: make_block(h, fork=1000) for h in (100, 101, 102)})
            with pytest.raises(ReorgConflict):
                await p.sync(102, 102)
            assert await p.latest_stored_height() == 101
