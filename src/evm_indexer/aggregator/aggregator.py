"""Per-(address, token) balance and activity aggregation.

Every applied TransferEvent is recorded in the transfer ledger so it can be
retracted exactly once when its block is superseded. Balances are adjusted
incrementally; on retraction the first/last timestamps are recomputed from
the surviving ledger events of the affected pairs.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager
from typing import TYPE_CHECKING

from evm_indexer.aggregator.models import TransferEvent
from evm_indexer.errors import InvalidInput, ReorgConflict
from evm_indexer.storage.repos import (
    LedgerEntryDTO,
    LedgerRepository,
    StatsDTO,
    StatsRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from evm_indexer.storage.models import AddressTokenStatsModel

logger = logging.getLogger(__name__)

StatsKey = tuple[int, int]


class StatsAggregator:
    """Maintains AddressTokenStats within the caller's transaction.

    The aggregator never commits. Updates to the same (address, token) pair
    are serialized by an in-process lock; across processes the row lock taken
    by SELECT ... FOR UPDATE provides the same guarantee.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[StatsKey, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, key: StatsKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def _locked(self, keys: Iterable[StatsKey]) -> AsyncIterator[None]:
        # Sorted acquisition keeps two transfers between the same pair from deadlocking.
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self._lock_for(key))
            yield

    @staticmethod
    def _keys(token_id: int, from_id: int | None, to_id: int | None) -> list[StatsKey]:
        return [(side, token_id) for side in (from_id, to_id) if side is not None]

    async def apply(self, session: AsyncSession, event: TransferEvent) -> None:
        """Apply a transfer event to the sender and receiver stats.

        Raises:
            InvalidInput: If the amount is negative or both sides are missing.
        """
        if event.amount < 0:
            raise InvalidInput(f"Transfer amount must be non-negative, got {event.amount}")
        if event.from_id is None and event.to_id is None:
            raise InvalidInput("Transfer event needs at least one of from/to")

        stats = StatsRepository(session)
        ledger = LedgerRepository(session)
        now = int(time.time())

        async with self._locked(self._keys(event.token_id, event.from_id, event.to_id)):
            if event.from_id is not None:
                row = await self._get_or_create(stats, event.from_id, event.token_id)
                row.balance = row.balance - event.amount
                if row.first_out is None:
                    row.first_out = event.timestamp
                row.last_out = (
                    event.timestamp if row.last_out is None else max(row.last_out, event.timestamp)
                )
                row.updated_at = now

            if event.to_id is not None:
                row = await self._get_or_create(stats, event.to_id, event.token_id)
                row.balance = row.balance + event.amount
                if row.first_in is None:
                    row.first_in = event.timestamp
                row.last_in = (
                    event.timestamp if row.last_in is None else max(row.last_in, event.timestamp)
                )
                row.updated_at = now

            await ledger.append(
                txhash_id=event.txhash_id,
                block_id=event.block_id,
                block_height=event.block_height,
                token_id=event.token_id,
                from_id=event.from_id,
                to_id=event.to_id,
                amount=event.amount,
                timestamp=event.timestamp,
            )

    async def retract(self, session: AsyncSession, event: TransferEvent) -> None:
        """Undo a previously applied transfer event.

        Raises:
            ReorgConflict: If no matching applied event exists.
        """
        entry = await LedgerRepository(session).find_active(
            txhash_id=event.txhash_id,
            block_id=event.block_id,
            token_id=event.token_id,
            from_id=event.from_id,
            to_id=event.to_id,
        )
        if entry is None:
            raise ReorgConflict(
                f"No applied transfer for tx id {event.txhash_id} in block id {event.block_id}"
            )
        await self._retract_entry(session, entry)

    async def retract_block(self, session: AsyncSession, block_id: int) -> int:
        """Undo every surviving transfer event of a block, newest first.

        Returns:
            Number of events retracted.
        """
        ledger = LedgerRepository(session)
        entries = await ledger.list_active_for_block(block_id)
        for entry in entries:
            await self._retract_entry(session, entry)
        if entries:
            logger.debug("Retracted %d transfer events of block id %d", len(entries), block_id)
        return len(entries)

    async def stats_of(
        self, session: AsyncSession, address_id: int, token_id: int
    ) -> StatsDTO | None:
        return await StatsRepository(session).get(address_id, token_id)

    async def _retract_entry(self, session: AsyncSession, entry: LedgerEntryDTO) -> None:
        stats = StatsRepository(session)
        ledger = LedgerRepository(session)
        now = int(time.time())

        async with self._locked(self._keys(entry.token_id, entry.from_id, entry.to_id)):
            await ledger.mark_retracted(entry.id)

            touched: dict[int, AddressTokenStatsModel] = {}
            if entry.from_id is not None:
                row = await self._get_existing(stats, entry.from_id, entry.token_id)
                row.balance = row.balance + entry.amount
                touched[entry.from_id] = row
            if entry.to_id is not None:
                row = await self._get_existing(stats, entry.to_id, entry.token_id)
                row.balance = row.balance - entry.amount
                touched[entry.to_id] = row

            for address_id, row in touched.items():
                window = await ledger.activity_window(address_id, entry.token_id)
                if window.is_empty:
                    if row.balance != 0:
                        raise ReorgConflict(
                            f"Stats for address id {address_id} token id {entry.token_id} "
                            f"have no events left but balance {row.balance}"
                        )
                    await stats.delete_model(row)
                    continue
                row.first_in = window.first_in
                row.last_in = window.last_in
                row.first_out = window.first_out
                row.last_out = window.last_out
                row.updated_at = now

            await session.flush()

    @staticmethod
    async def _get_or_create(
        stats: StatsRepository, address_id: int, token_id: int
    ) -> AddressTokenStatsModel:
        row = await stats.get_model(address_id, token_id, for_update=True)
        if row is None:
            row = await stats.create(address_id, token_id)
        return row

    @staticmethod
    async def _get_existing(
        stats: StatsRepository, address_id: int, token_id: int
    ) -> AddressTokenStatsModel:
        row = await stats.get_model(address_id, token_id, for_update=True)
        if row is None:
            raise ReorgConflict(
                f"Missing stats for address id {address_id} token id {token_id} during retraction"
            )
        return row
