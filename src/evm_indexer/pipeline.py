"""Main pipeline orchestrator for the EVM indexer.

This module provides the Pipeline class that wires together the identifier
registry, the transaction classifier and the stats aggregator, and drives
blocks from the node into storage one height at a time.

Pipeline flow:
    EvmClient -> intern identifiers -> classify -> write block -> aggregate -> commit
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis
from sqlalchemy.exc import DBAPIError, IntegrityError

from evm_indexer.aggregator import StatsAggregator, TransferEvent
from evm_indexer.classifier import (
    Classification,
    ContractDeployment,
    Erc20Transfer,
    EthTransfer,
    GenericCall,
    classify,
)
from evm_indexer.config import Settings, get_settings
from evm_indexer.errors import (
    BlockCommitError,
    IndexerError,
    InvalidInput,
    ReorgConflict,
    StorageConflict,
    StorageUnavailable,
)
from evm_indexer.ingestor.chain import ChainClientError, EvmClient
from evm_indexer.models import NATIVE_TOKEN_ID, ZERO_ADDRESS, BlockState, IdentifierKind
from evm_indexer.registry import IdentifierRegistry, validate_raw_value
from evm_indexer.storage.database import DatabaseManager
from evm_indexer.storage.repos import (
    BlockDTO,
    BlockRepository,
    StatsDTO,
    TransactionDTO,
    TransactionRepository,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from evm_indexer.ingestor.models import RawBlock, RawTransaction, ReorgNotification

logger = logging.getLogger(__name__)

InternKey = tuple[bytes, IdentifierKind]


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    blocks_committed: int = 0
    blocks_skipped: int = 0
    blocks_retracted: int = 0
    transactions_written: int = 0
    transactions_rejected: int = 0
    transfers_applied: int = 0
    last_committed_height: int | None = None
    errors: int = 0
    last_error: str | None = None


@dataclass
class _PreparedTx:
    raw: RawTransaction
    classification: Classification
    txhash_id: int
    from_id: int
    to_id: int | None
    recipient_id: int | None = None
    contract_id: int | None = None
    # Kind-independent address ids for the aggregator; None for the zero address.
    from_stats_id: int | None = None
    to_stats_id: int | None = None


@dataclass
class _PreparedBlock:
    raw: RawBlock
    block_id: int
    parent_id: int | None
    txs: list[_PreparedTx] = field(default_factory=list)
    rejected: int = 0

    @property
    def token_ids(self) -> dict[int, bytes]:
        """Token contract ids touched by ERC20 transfers, with their raw address."""
        return {
            tx.to_id: tx.classification.token_address
            for tx in self.txs
            if isinstance(tx.classification, Erc20Transfer) and tx.to_id is not None
        }


class Pipeline:
    """Ordered ingestion pipeline.

    Blocks are interned concurrently, then written and aggregated inside one
    database transaction, strictly one height at a time. A block whose height
    is already stored under a different hash supersedes the stored block and
    everything above it.

    Example:
        ```python
        from evm_indexer.config import get_settings
        from evm_indexer.pipeline import Pipeline

        async with Pipeline(get_settings()) as pipeline:
            await pipeline.sync(19_000_000, 19_000_100)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_manager: DatabaseManager | None = None,
        client: EvmClient | None = None,
        registry: IdentifierRegistry | None = None,
        aggregator: StatsAggregator | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db_manager: Database manager; created from settings when omitted.
            client: Node client; created from settings when omitted.
            registry: Identifier registry; created over db_manager when omitted.
            aggregator: Stats aggregator; a fresh one when omitted.
        """
        self._settings = settings or get_settings()

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._db_manager = db_manager
        self._client = client
        self._registry = registry
        self._aggregator = aggregator
        self._redis: Redis | None = None
        self._owns_db = db_manager is None
        self._owns_client = client is None

        self._stop_event: asyncio.Event | None = None
        self._commit_lock = asyncio.Lock()

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    @property
    def registry(self) -> IdentifierRegistry:
        if self._registry is None:
            raise RuntimeError("Pipeline is not started")
        return self._registry

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the pipeline and initialize components.

        Raises:
            RuntimeError: If pipeline is already running.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            self._initialize_components()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline and release owned resources."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")
        if self._stop_event:
            self._stop_event.set()

        await self._cleanup()
        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    def _initialize_components(self) -> None:
        settings = self._settings

        if self._db_manager is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager(
                settings.database.url, pool_size=settings.database.pool_size
            )

        if self._client is None:
            if settings.redis.url:
                logger.debug("Initializing Redis connection...")
                self._redis = Redis.from_url(settings.redis.url)
            logger.debug("Initializing EVM client...")
            self._client = EvmClient.from_settings(settings, redis=self._redis)

        if self._registry is None:
            self._registry = IdentifierRegistry(
                self._db_manager.session_factory,
                max_concurrency=settings.ingest.workers,
            )
        if self._aggregator is None:
            self._aggregator = StatsAggregator()

    async def _cleanup(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        if self._owns_db and self._db_manager is not None:
            await self._db_manager.dispose_async()
            self._db_manager = None
            self._registry = None

    async def run(self) -> None:
        """Start the pipeline and follow the chain head until stopped."""
        await self.start()
        try:
            await self.follow()
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    def _components(self) -> tuple[DatabaseManager, IdentifierRegistry, StatsAggregator]:
        if self._db_manager is None or self._registry is None or self._aggregator is None:
            raise RuntimeError("Pipeline is not started")
        return self._db_manager, self._registry, self._aggregator

    # ------------------------------------------------------------------
    # Block processing
    # ------------------------------------------------------------------

    async def process_block(self, block: RawBlock) -> BlockState:
        """Ingest one canonical block.

        Returns:
            BlockState.COMMITTED once the block (or an identical earlier copy)
            is durably stored.

        Raises:
            InvalidInput: If the block header itself is malformed.
            ReorgConflict: If superseded stats cannot be retracted consistently.
            BlockCommitError: If storage keeps failing after every retry.
        """
        logger.debug("Block %d %s: %s", block.height, block.hash_hex, BlockState.FETCHED.value)
        validate_raw_value(block.hash, IdentifierKind.BLOCK_HASH)

        async with self._commit_lock:
            logger.debug("Block %d: %s", block.height, BlockState.INTERNING.value)
            prepared = await self._with_retry(block, lambda: self._intern_block(block))
            self._stats.transactions_rejected += prepared.rejected

            written = await self._with_retry(block, lambda: self._write_block(prepared))

        if written:
            self._stats.blocks_committed += 1
            self._stats.transactions_written += len(prepared.txs)
            self._stats.last_committed_height = block.height
            logger.info(
                "Committed block %d %s (%d txs, %d rejected)",
                block.height,
                block.hash_hex,
                len(prepared.txs),
                prepared.rejected,
            )
            if self._settings.ingest.fetch_token_metadata:
                await self._enrich_tokens(prepared)
        else:
            self._stats.blocks_skipped += 1
            logger.debug("Block %d %s already stored; skipped", block.height, block.hash_hex)
        return BlockState.COMMITTED

    async def _with_retry(self, block: RawBlock, step: Callable[[], Awaitable[Any]]) -> Any:
        """Run a storage step, retrying transient failures with backoff."""
        ingest = self._settings.ingest
        delay = ingest.retry_delay_seconds
        for attempt in range(1, ingest.max_commit_attempts + 1):
            try:
                return await step()
            except (StorageUnavailable, StorageConflict) as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.warning(
                    "Block %d storage step failed (attempt %d/%d): %s",
                    block.height,
                    attempt,
                    ingest.max_commit_attempts,
                    e,
                )
                if attempt == ingest.max_commit_attempts:
                    logger.error("Block %d %s exhausted its retries", block.height, block.hash_hex)
                    raise BlockCommitError(block.height, block.hash, e) from e
                await asyncio.sleep(delay)
                delay *= 2
        raise RuntimeError("max_commit_attempts must be at least 1")

    async def _intern_block(self, block: RawBlock) -> _PreparedBlock:
        _, registry, _ = self._components()

        keys: list[InternKey] = [(block.hash, IdentifierKind.BLOCK_HASH)]
        if block.parent_hash:
            keys.append((block.parent_hash, IdentifierKind.BLOCK_HASH))

        accepted: list[tuple[RawTransaction, Classification]] = []
        rejected = 0
        for tx in block.transactions:
            try:
                validate_raw_value(tx.hash, IdentifierKind.TX_HASH)
                validate_raw_value(tx.from_address, IdentifierKind.EOA)
                if tx.to_address is not None:
                    validate_raw_value(tx.to_address, IdentifierKind.EOA)
                if tx.contract_address is not None:
                    validate_raw_value(tx.contract_address, IdentifierKind.CONTRACT)
            except InvalidInput as e:
                rejected += 1
                logger.warning(
                    "Rejected tx 0x%s in block %d: %s", tx.hash.hex(), block.height, e
                )
                continue
            accepted.append((tx, classify(tx)))

        # Second pass so address kinds can depend on what is already known.
        deployed = {
            classification.contract_address
            for _, classification in accepted
            if isinstance(classification, ContractDeployment)
            and classification.contract_address is not None
        }
        tx_keys: list[dict[str, InternKey]] = []
        for tx, classification in accepted:
            entry: dict[str, InternKey] = {
                "hash": (tx.hash, IdentifierKind.TX_HASH),
                "from": (tx.from_address, IdentifierKind.EOA),
            }
            if isinstance(classification, ContractDeployment):
                if classification.contract_address is not None:
                    entry["contract"] = (classification.contract_address, IdentifierKind.CONTRACT)
            elif isinstance(classification, EthTransfer):
                entry["to"] = (
                    classification.to_address,
                    await self._address_kind(classification.to_address, deployed),
                )
            elif isinstance(classification, Erc20Transfer):
                entry["to"] = (classification.token_address, IdentifierKind.CONTRACT)
                entry["recipient"] = (
                    classification.to_address,
                    await self._address_kind(classification.to_address, deployed),
                )
            elif tx.to_address is not None:
                entry["to"] = (tx.to_address, IdentifierKind.CONTRACT)
            tx_keys.append(entry)
            keys.extend(entry.values())

        ids = await registry.intern_many(keys)

        # Resolved after interning so the oldest id of each address is settled.
        stats_ids: dict[bytes, int | None] = {ZERO_ADDRESS: None}
        for _, classification in accepted:
            if not isinstance(classification, (EthTransfer, Erc20Transfer)):
                continue
            for raw in (classification.from_address, classification.to_address):
                if raw in stats_ids:
                    continue
                address_id = await registry.address_id_of(raw)
                if address_id is None:
                    raise StorageConflict(f"Address 0x{raw.hex()} vanished after interning")
                stats_ids[raw] = address_id

        prepared = _PreparedBlock(
            raw=block,
            block_id=ids[(block.hash, IdentifierKind.BLOCK_HASH)],
            parent_id=(
                ids[(block.parent_hash, IdentifierKind.BLOCK_HASH)] if block.parent_hash else None
            ),
            rejected=rejected,
        )
        for (tx, classification), entry in zip(accepted, tx_keys, strict=True):
            prepared_tx = _PreparedTx(
                raw=tx,
                classification=classification,
                txhash_id=ids[entry["hash"]],
                from_id=ids[entry["from"]],
                to_id=ids[entry["to"]] if "to" in entry else None,
                recipient_id=ids[entry["recipient"]] if "recipient" in entry else None,
                contract_id=ids[entry["contract"]] if "contract" in entry else None,
            )
            if isinstance(classification, (EthTransfer, Erc20Transfer)):
                prepared_tx.from_stats_id = stats_ids[classification.from_address]
                prepared_tx.to_stats_id = stats_ids[classification.to_address]
            prepared.txs.append(prepared_tx)
        return prepared

    async def _address_kind(self, address: bytes, deployed: set[bytes]) -> IdentifierKind:
        """EOA unless the address is deployed in this block or known as a contract."""
        if address in deployed:
            return IdentifierKind.CONTRACT
        if await self.registry.identifier_of(address, IdentifierKind.CONTRACT) is not None:
            return IdentifierKind.CONTRACT
        return IdentifierKind.EOA

    async def _write_block(self, prepared: _PreparedBlock) -> bool:
        """Write and aggregate a prepared block in one transaction.

        Returns:
            False if the block was already stored (nothing written).
        """
        db, _, _ = self._components()
        block = prepared.raw
        retracted = 0
        applied = 0
        try:
            async with db.get_async_session() as session:
                blocks = BlockRepository(session)
                if await blocks.get(prepared.block_id) is not None:
                    return False

                superseded = await blocks.list_from_height(block.height)
                if superseded:
                    logger.warning(
                        "Reorg at height %d: superseding %d stored block(s) up to height %d",
                        block.height,
                        len(superseded),
                        superseded[0].height,
                    )
                    retracted = await self._retract_blocks(session, superseded)

                logger.debug("Block %d: %s", block.height, BlockState.WRITING.value)
                await blocks.insert(
                    BlockDTO(
                        identifier_id=prepared.block_id,
                        height=block.height,
                        timestamp=block.timestamp,
                        parent_id=prepared.parent_id,
                        tx_count=len(prepared.txs),
                    )
                )
                events = await self._write_transactions(session, prepared)

                logger.debug("Block %d: %s", block.height, BlockState.AGGREGATING.value)
                aggregator = self._components()[2]
                for event in events:
                    await aggregator.apply(session, event)
                    applied += 1
        except IntegrityError as e:
            raise StorageConflict(f"Block {block.height} collided with stored rows: {e}") from e
        except DBAPIError as e:
            raise StorageUnavailable(f"Block {block.height} write failed: {e}") from e

        self._stats.blocks_retracted += retracted
        self._stats.transfers_applied += applied
        return True

    async def _write_transactions(
        self, session: AsyncSession, prepared: _PreparedBlock
    ) -> list[TransferEvent]:
        txs = TransactionRepository(session)
        block = prepared.raw
        events: list[TransferEvent] = []

        for tx in prepared.txs:
            c = tx.classification
            method_id = c.method_id if isinstance(c, GenericCall) else None
            params = c.params if isinstance(c, GenericCall) else None
            await txs.insert(
                TransactionDTO(
                    txhash_id=tx.txhash_id,
                    block_id=prepared.block_id,
                    block_height=block.height,
                    tx_index=tx.raw.tx_index,
                    category=c.category,
                    value=tx.raw.value,
                    from_id=tx.from_id,
                    to_id=tx.to_id,
                    gas_limit=tx.raw.gas_limit,
                    gas_price=tx.raw.gas_price,
                    method_id=method_id,
                    params=params,
                )
            )

            if isinstance(c, EthTransfer):
                if tx.to_id is None:
                    raise RuntimeError(f"ETH transfer 0x{tx.raw.hash.hex()} has no recipient id")
                await txs.insert_eth_transfer(
                    txhash_id=tx.txhash_id, value=c.value, from_id=tx.from_id, to_id=tx.to_id
                )
                if tx.from_stats_id is not None or tx.to_stats_id is not None:
                    events.append(
                        TransferEvent(
                            txhash_id=tx.txhash_id,
                            block_id=prepared.block_id,
                            block_height=block.height,
                            from_id=tx.from_stats_id,
                            to_id=tx.to_stats_id,
                            amount=c.value,
                            timestamp=block.timestamp,
                            token_id=NATIVE_TOKEN_ID,
                        )
                    )
            elif isinstance(c, Erc20Transfer):
                if tx.to_id is None or tx.recipient_id is None:
                    raise RuntimeError(f"ERC20 transfer 0x{tx.raw.hash.hex()} is missing ids")
                await txs.insert_erc20_transfer(
                    txhash_id=tx.txhash_id,
                    token_id=tx.to_id,
                    from_id=tx.from_id,
                    to_id=tx.recipient_id,
                    value=c.amount,
                )
                if tx.from_stats_id is not None or tx.to_stats_id is not None:
                    events.append(
                        TransferEvent(
                            txhash_id=tx.txhash_id,
                            block_id=prepared.block_id,
                            block_height=block.height,
                            from_id=tx.from_stats_id,
                            to_id=tx.to_stats_id,
                            amount=c.amount,
                            timestamp=block.timestamp,
                            token_id=tx.to_id,
                        )
                    )
            elif isinstance(c, ContractDeployment):
                await txs.insert_contract_deployment(
                    txhash_id=tx.txhash_id,
                    address_id=tx.contract_id,
                    deployer_id=tx.from_id,
                    bytecode=c.bytecode,
                )
        return events

    async def _retract_blocks(self, session: AsyncSession, superseded: list[BlockDTO]) -> int:
        """Retract stored blocks (highest first) and delete their rows."""
        _, _, aggregator = self._components()
        blocks = BlockRepository(session)
        txs = TransactionRepository(session)
        for stored in sorted(superseded, key=lambda b: b.height, reverse=True):
            events = await aggregator.retract_block(session, stored.identifier_id)
            removed = await txs.delete_for_block(stored.identifier_id)
            await blocks.delete(stored.identifier_id)
            logger.info(
                "Block %d: %s (%d transfers, %d txs)",
                stored.height,
                BlockState.RETRACTED.value,
                events,
                removed,
            )
        return len(superseded)

    async def handle_reorg(self, notification: ReorgNotification) -> int:
        """Retract the notified block and everything above it.

        Returns:
            Number of blocks retracted.

        Raises:
            ReorgConflict: If the stored block at old_height is not old_hash.
        """
        db, registry, _ = self._components()
        old_id = await registry.identifier_of(notification.old_hash, IdentifierKind.BLOCK_HASH)

        async with self._commit_lock:
            try:
                async with db.get_async_session() as session:
                    blocks = BlockRepository(session)
                    stored = await blocks.get_by_height(notification.old_height)
                    if stored is None or old_id is None or stored.identifier_id != old_id:
                        raise ReorgConflict(
                            f"No stored block 0x{notification.old_hash.hex()} "
                            f"at height {notification.old_height}"
                        )
                    superseded = await blocks.list_from_height(notification.old_height)
                    retracted = await self._retract_blocks(session, superseded)
            except DBAPIError as e:
                raise StorageUnavailable(f"Reorg retraction failed: {e}") from e

        self._stats.blocks_retracted += retracted
        logger.warning(
            "Reorg notification: retracted %d block(s) from height %d; new head %d 0x%s",
            retracted,
            notification.old_height,
            notification.new_height,
            notification.new_hash.hex(),
        )
        return retracted

    async def _enrich_tokens(self, prepared: _PreparedBlock) -> None:
        """Fetch metadata for tokens seen for the first time. Never raises."""
        token_ids = prepared.token_ids
        if not token_ids or self._client is None:
            return
        try:
            missing = await self.registry.tokens_missing_metadata(list(token_ids))
            for token_id in missing:
                metadata = await self._client.get_erc20_metadata(token_ids[token_id])
                if metadata is None:
                    logger.debug("Token 0x%s exposes no ERC20 metadata", token_ids[token_id].hex())
                    continue
                await self.registry.upsert_token(
                    token_id,
                    name=metadata.name,
                    symbol=metadata.symbol,
                    decimals=metadata.decimals,
                    supply=metadata.total_supply,
                )
        except (ChainClientError, IndexerError) as e:
            logger.warning(
                "Token metadata enrichment failed for block %d: %s", prepared.raw.height, e
            )

    # ------------------------------------------------------------------
    # Chain following
    # ------------------------------------------------------------------

    async def latest_stored_height(self) -> int | None:
        db, _, _ = self._components()
        async with db.get_async_session() as session:
            latest = await BlockRepository(session).get_latest()
        return latest.height if latest else None

    async def _stored_block_at(self, height: int) -> BlockDTO | None:
        db, _, _ = self._components()
        async with db.get_async_session() as session:
            return await BlockRepository(session).get_by_height(height)

    async def sync(self, start: int, end: int) -> int | None:
        """Ingest heights start..end (inclusive) in ascending order.

        Before each height the block's parent hash is checked against the
        stored block below it; on mismatch the sync steps back to re-ingest
        the fork, at most max_reorg_depth blocks.

        Returns:
            The last committed height, or None if nothing was committed.

        Raises:
            ReorgConflict: If the fork is deeper than max_reorg_depth.
            BlockCommitError: If a block exhausts its retries; sync halts there.
        """
        if self._client is None:
            raise RuntimeError("Pipeline is not started")
        if start > end:
            return None

        max_depth = self._settings.ingest.max_reorg_depth
        height = start
        walked_back = 0
        last_committed: int | None = None

        while height <= end:
            if self._stop_event is not None and self._stop_event.is_set():
                break

            block = await self._client.get_block(height, cacheable=end - height >= max_depth)

            if height > 0 and await self._parent_mismatch(block):
                walked_back += 1
                if walked_back > max_depth:
                    raise ReorgConflict(
                        f"Fork below height {height} is deeper than {max_depth} blocks"
                    )
                logger.warning(
                    "Parent of block %d does not match stored chain; stepping back", height
                )
                height -= 1
                continue

            try:
                await self.process_block(block)
            except BlockCommitError as e:
                self._stats.last_error = str(e)
                logger.error("Sync halted at height %d: %s", height, e)
                raise
            walked_back = 0
            last_committed = height
            height += 1

        return last_committed

    async def _parent_mismatch(self, block: RawBlock) -> bool:
        stored_parent = await self._stored_block_at(block.height - 1)
        if stored_parent is None:
            return False
        parent_id = await self.registry.identifier_of(block.parent_hash, IdentifierKind.BLOCK_HASH)
        return parent_id != stored_parent.identifier_id

    async def follow(self) -> None:
        """Follow the chain head until stop() is called."""
        if self._client is None or self._stop_event is None:
            raise RuntimeError("Pipeline is not started")

        ingest = self._settings.ingest
        latest = await self.latest_stored_height()
        next_height = latest + 1 if latest is not None else ingest.start_block
        logger.info("Following chain from height %d", next_height)

        while not self._stop_event.is_set():
            head = await self._client.get_latest_block_number() - ingest.confirmations
            if next_height <= head:
                committed = await self.sync(next_height, head)
                if committed is not None:
                    next_height = committed + 1
                continue
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), ingest.poll_interval_seconds)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def identifier_of(self, raw: bytes, kind: IdentifierKind) -> int | None:
        return await self.registry.identifier_of(raw, kind)

    async def stats_of(self, address: bytes, token: bytes | None = None) -> StatsDTO | None:
        """Stats for a raw address and token (None for the native asset)."""
        db, registry, aggregator = self._components()
        address_id = await registry.address_id_of(address)
        if address_id is None:
            return None

        token_id = NATIVE_TOKEN_ID
        if token is not None:
            found = await registry.identifier_of(token, IdentifierKind.CONTRACT)
            if found is None:
                return None
            token_id = found

        async with db.get_async_session() as session:
            return await aggregator.stats_of(session, address_id, token_id)
