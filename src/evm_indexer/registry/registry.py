"""Identifier interning registry.

Maps raw fixed-width values (20-byte addresses, 32-byte hashes) plus a
kind tag to stable surrogate ids. Interning is idempotent and safe for
concurrent callers without a global lock:

1. Look up candidates by (prefix, kind) and verify the remainder.
2. On a miss, insert in a short transaction of its own.
3. If the insert loses a race (unique violation), discard it and re-read
   the winner's id.

Each intern commits independently of any block transaction, so identifiers
minted for a block that later fails to commit stay behind as harmless
orphans. Identifiers are never deleted.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sqlalchemy.exc import DBAPIError, IntegrityError

from evm_indexer.errors import InvalidInput, StorageConflict, StorageUnavailable
from evm_indexer.models import IdentifierKind
from evm_indexer.storage.repos import (
    IdentifierDTO,
    IdentifierRepository,
    NicknameDTO,
    NicknameRepository,
    TokenDTO,
    TokenRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_CACHE_SIZE = 100_000
MAX_INTERN_ATTEMPTS = 3

InternKey = tuple[bytes, IdentifierKind]
# A None kind caches the kind-independent address id.
CacheKey = tuple[bytes, IdentifierKind | None]


def validate_raw_value(raw: bytes, kind: IdentifierKind) -> bytes:
    """Check the raw value width for its kind.

    Raises:
        InvalidInput: If the value is not bytes or has the wrong length.
    """
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise InvalidInput(f"{kind.value} value must be bytes, got {type(raw).__name__}")
    raw = bytes(raw)
    if len(raw) != kind.width:
        raise InvalidInput(f"{kind.value} value must be {kind.width} bytes, got {len(raw)}")
    return raw


class IdentifierRegistry:
    """Sole owner of identifier minting.

    Example:
        ```python
        registry = IdentifierRegistry(db.session_factory)
        tx_id = await registry.intern(tx_hash, IdentifierKind.TX_HASH)
        assert await registry.intern(tx_hash, IdentifierKind.TX_HASH) == tx_id
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        """Initialize the registry.

        Args:
            session_factory: Factory for independent sessions used per intern.
            max_concurrency: Upper bound on concurrent interns in `intern_many`.
            cache_size: Number of resolved (raw, kind) -> id entries to keep.
        """
        self._session_factory = session_factory
        self._max_concurrency = max_concurrency
        self._cache_size = cache_size
        self._cache: OrderedDict[CacheKey, int] = OrderedDict()

    def _cache_get(self, key: CacheKey) -> int | None:
        identifier_id = self._cache.get(key)
        if identifier_id is not None:
            self._cache.move_to_end(key)
        return identifier_id

    def _cache_put(self, key: CacheKey, identifier_id: int) -> None:
        self._cache[key] = identifier_id
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    async def intern(self, raw: bytes, kind: IdentifierKind) -> int:
        """Return the id for (raw, kind), allocating it on first sight.

        Raises:
            InvalidInput: If the raw value width does not match the kind.
            StorageUnavailable: If the backend fails.
            StorageConflict: If the race protocol cannot settle on an id.
        """
        raw = validate_raw_value(raw, kind)
        key = (raw, kind)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        for attempt in range(MAX_INTERN_ATTEMPTS):
            try:
                async with self._session_factory() as session:
                    repo = IdentifierRepository(session)
                    existing = await repo.find(raw, kind)
                    if existing is not None:
                        self._cache_put(key, existing)
                        return existing

                    try:
                        identifier_id = await repo.insert(raw, kind)
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        logger.debug(
                            "Intern race lost for %s 0x%s (attempt %d); re-reading winner",
                            kind.value,
                            raw.hex(),
                            attempt + 1,
                        )
                        winner = await repo.find(raw, kind)
                        if winner is not None:
                            self._cache_put(key, winner)
                            return winner
                        continue

                    self._cache_put(key, identifier_id)
                    return identifier_id
            except DBAPIError as e:
                raise StorageUnavailable(f"Interning {kind.value} failed: {e}") from e

        raise StorageConflict(
            f"Could not intern {kind.value} 0x{raw.hex()} after {MAX_INTERN_ATTEMPTS} attempts"
        )

    async def intern_many(self, items: Iterable[InternKey]) -> dict[InternKey, int]:
        """Intern a batch concurrently with bounded parallelism.

        Duplicate keys are interned once. All tasks run to completion before
        the first error (if any) is raised.
        """
        keys: list[InternKey] = []
        seen: set[InternKey] = set()
        for raw, kind in items:
            key = (validate_raw_value(raw, kind), kind)
            if key not in seen:
                seen.add(key)
                keys.append(key)
        if not keys:
            return {}

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def worker(key: InternKey) -> int:
            async with semaphore:
                return await self.intern(*key)

        results = await asyncio.gather(*(worker(k) for k in keys), return_exceptions=True)

        interned: dict[InternKey, int] = {}
        for key, result in zip(keys, results, strict=True):
            if isinstance(result, BaseException):
                raise result
            interned[key] = result
        return interned

    async def identifier_of(self, raw: bytes, kind: IdentifierKind) -> int | None:
        """Reverse lookup without allocating."""
        raw = validate_raw_value(raw, kind)
        key = (raw, kind)
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        try:
            async with self._session_factory() as session:
                identifier_id = await IdentifierRepository(session).find(raw, kind)
        except DBAPIError as e:
            raise StorageUnavailable(f"Identifier lookup failed: {e}") from e
        if identifier_id is not None:
            self._cache_put(key, identifier_id)
        return identifier_id

    async def address_id_of(self, raw: bytes) -> int | None:
        """Kind-independent id of an address: the first one minted for it.

        An address may hold both an EOA and a CONTRACT identifier (funded
        before it was known to be a contract). Balances and activity are
        keyed on the oldest of them so every transfer lands on one row.
        Ids only grow and are never deleted, so a found value is final.
        """
        raw = validate_raw_value(raw, IdentifierKind.EOA)
        key: CacheKey = (raw, None)
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        try:
            async with self._session_factory() as session:
                identifier_id = await IdentifierRepository(session).find_address(raw)
        except DBAPIError as e:
            raise StorageUnavailable(f"Address lookup failed: {e}") from e
        if identifier_id is not None:
            self._cache_put(key, identifier_id)
        return identifier_id

    async def resolve(self, identifier_id: int) -> IdentifierDTO | None:
        """Forward lookup: id -> raw value and kind."""
        async with self._session_factory() as session:
            return await IdentifierRepository(session).get(identifier_id)

    async def attach_nickname(self, identifier_id: int, label: str, label_kind: int) -> None:
        """Attach a human label (append-only; duplicates allowed).

        Raises:
            InvalidInput: If the identifier does not exist or the label is empty.
        """
        label = label.strip()
        if not label:
            raise InvalidInput("nickname label must not be empty")
        if len(label) > 255:
            raise InvalidInput("nickname label must be at most 255 characters")
        async with self._session_factory() as session:
            if await IdentifierRepository(session).get(identifier_id) is None:
                raise InvalidInput(f"Unknown identifier {identifier_id}")
            await NicknameRepository(session).add(
                NicknameDTO(identifier_id=identifier_id, nick=label, nick_type=label_kind)
            )
            await session.commit()

    async def nicknames_of(self, identifier_id: int) -> list[NicknameDTO]:
        async with self._session_factory() as session:
            return await NicknameRepository(session).list_for(identifier_id)

    async def upsert_token(
        self,
        identifier_id: int,
        *,
        name: str,
        symbol: str,
        decimals: int,
        supply: int,
    ) -> TokenDTO:
        """Create or replace ERC20 metadata for a contract identifier.

        Raises:
            InvalidInput: If the identifier is unknown, not a contract, or the
                metadata is out of range.
        """
        if not 0 <= decimals <= 255:
            raise InvalidInput(f"decimals out of range: {decimals}")
        if supply < 0:
            raise InvalidInput("supply must be non-negative")
        async with self._session_factory() as session:
            identifier = await IdentifierRepository(session).get(identifier_id)
            if identifier is None:
                raise InvalidInput(f"Unknown identifier {identifier_id}")
            if identifier.kind != IdentifierKind.CONTRACT:
                raise InvalidInput(
                    f"Token metadata requires a contract identifier, got {identifier.kind.value}"
                )
            dto = await TokenRepository(session).upsert(
                TokenDTO(
                    identifier_id=identifier_id,
                    name=name,
                    symbol=symbol,
                    decimals=decimals,
                    supply=supply,
                )
            )
            await session.commit()
            return dto

    async def token_of(self, identifier_id: int) -> TokenDTO | None:
        async with self._session_factory() as session:
            return await TokenRepository(session).get(identifier_id)

    async def tokens_missing_metadata(self, identifier_ids: list[int]) -> list[int]:
        async with self._session_factory() as session:
            return await TokenRepository(session).missing(identifier_ids)
