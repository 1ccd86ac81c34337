"""EVM JSON-RPC client used to fetch blocks for ingestion.

Features:
- Client-side token bucket rate limiting
- Retry with exponential backoff, then failover to a secondary endpoint
- Optional Redis cache for blocks deep enough to be treated as final
- ERC20 metadata reads (name, symbol, decimals, totalSupply)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis
from redis.exceptions import RedisError
from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from evm_indexer.ingestor.models import RawBlock

if TYPE_CHECKING:
    from evm_indexer.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_SECOND = 25.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_BLOCK_CACHE_TTL_SECONDS = 3600
PRIMARY_RECOVERY_INTERVAL_SECONDS = 60.0


def _view_abi(name: str, output_type: str) -> dict[str, Any]:
    return {
        "name": name,
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": output_type}],
    }


_ERC20_METADATA_ABI = [
    _view_abi("name", "string"),
    _view_abi("symbol", "string"),
    _view_abi("decimals", "uint8"),
    _view_abi("totalSupply", "uint256"),
]

# Pre-standard tokens (e.g. MKR) return bytes32 for name/symbol.
_ERC20_LEGACY_ABI = [_view_abi("name", "bytes32"), _view_abi("symbol", "bytes32")]


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails on every endpoint."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    capacity: float
    refill_per_second: float
    tokens: float
    updated_at: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            capacity=max_requests_per_second,
            refill_per_second=max_requests_per_second,
            tokens=max_requests_per_second,
            updated_at=time.monotonic(),
        )

    async def acquire(self, cost: float = 1.0) -> None:
        """Take `cost` tokens, sleeping until enough have accumulated."""
        while True:
            now = time.monotonic()
            self.tokens = min(
                self.capacity, self.tokens + (now - self.updated_at) * self.refill_per_second
            )
            self.updated_at = now
            if self.tokens >= cost:
                self.tokens -= cost
                return
            await asyncio.sleep((cost - self.tokens) / self.refill_per_second)


@dataclass(frozen=True)
class TokenMetadata:
    """ERC20 metadata read from a token contract."""

    name: str
    symbol: str
    decimals: int
    total_supply: int


def _to_plain(value: Any) -> Any:
    """Turn web3 AttributeDict/HexBytes structures into JSON-safe values."""
    if isinstance(value, Mapping):
        return {str(k): _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    return value


def _normalize_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).rstrip(b"\x00").decode("utf-8").strip() or None
        except UnicodeDecodeError:
            return None
    return None


class EvmClient:
    """Async EVM node client with rate limiting, retries and failover.

    Example:
        ```python
        client = EvmClient("http://localhost:8545", redis=Redis.from_url(url))
        head = await client.get_latest_block_number()
        block = await client.get_block(head)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        poa: bool = False,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        block_cache_ttl_seconds: int = DEFAULT_BLOCK_CACHE_TTL_SECONDS,
    ) -> None:
        """Initialize the client.

        Args:
            rpc_url: Primary JSON-RPC endpoint.
            fallback_rpc_url: Endpoint used once the primary keeps failing.
            redis: Optional Redis client for caching final blocks.
            poa: Inject the proof-of-authority extraData middleware.
            max_requests_per_second: Client-side rate limit.
            max_retries: Attempts per endpoint.
            retry_delay_seconds: Initial backoff delay, doubled per attempt.
            block_cache_ttl_seconds: TTL of cached blocks.
        """
        self._redis = redis
        self._poa = poa
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._block_cache_ttl = block_cache_ttl_seconds
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._w3 = self._new_web3(rpc_url)
        self._w3_fallback = self._new_web3(fallback_rpc_url) if fallback_rpc_url else None

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._cache_prefix = "evm:"

    @classmethod
    def from_settings(cls, settings: Settings, *, redis: Redis | None = None) -> EvmClient:
        return cls(
            settings.rpc.rpc_url,
            fallback_rpc_url=settings.rpc.fallback_rpc_url,
            redis=redis,
            poa=settings.rpc.poa,
            max_requests_per_second=settings.rpc.max_requests_per_second,
        )

    def _new_web3(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        if self._poa:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return w3

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def _get_cached(self, key: str) -> str | None:
        if self._redis is None:
            return None
        try:
            value = await self._redis.get(key)
        except RedisError as e:
            logger.warning("Cache get failed for %s: %s", key, e)
            return None
        if isinstance(value, bytes):
            return value.decode()
        return str(value) if value is not None else None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except RedisError as e:
            logger.warning("Cache set failed for %s: %s", key, e)

    # ------------------------------------------------------------------
    # RPC execution
    # ------------------------------------------------------------------

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > PRIMARY_RECOVERY_INTERVAL_SECONDS:
            self._last_primary_check = now
            return True
        return False

    async def _attempt(
        self, w3: AsyncWeb3[AsyncHTTPProvider], label: str, func_name: str, *args: Any
    ) -> tuple[bool, Any]:
        """Call `w3.eth.<func_name>` up to max_retries times with backoff.

        Returns:
            (True, result) on success, (False, last_error) otherwise.
        """
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                return True, await getattr(w3.eth, func_name)(*args)
            except Web3Exception as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(delay)
                    delay *= 2
        return False, last_error

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover.

        Raises:
            RPCError: If every endpoint fails.
        """
        await self._rate_limiter.acquire()

        last_error: Any = None
        if self._should_try_primary():
            ok, result = await self._attempt(self._w3, "Primary", func_name, *args)
            if ok:
                self._primary_healthy = True
                return result
            last_error = result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback is not None:
            ok, result = await self._attempt(self._w3_fallback, "Fallback", func_name, *args)
            if ok:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = result

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    async def get_latest_block_number(self) -> int:
        return int(await self._execute_with_retry("get_block_number"))

    async def get_block(self, height: int, *, cacheable: bool = False) -> RawBlock:
        """Fetch a block with full transactions.

        Contract creations are completed from their receipts (created address)
        and the deployed runtime code.

        Args:
            height: Block height.
            cacheable: The block is final and may be served from / stored in Redis.
        """
        if height < 0:
            raise ValueError("height must be >= 0")

        cache_key = f"{self._cache_prefix}block:{height}"
        if cacheable:
            cached = await self._get_cached(cache_key)
            if cached is not None:
                return RawBlock.from_rpc(json.loads(cached))

        block = _to_plain(await self._execute_with_retry("get_block", height, True))
        for tx in block.get("transactions", []):
            if isinstance(tx, dict) and not tx.get("to"):
                await self._complete_deployment(tx, height)

        if cacheable:
            await self._set_cached(cache_key, json.dumps(block), ttl=self._block_cache_ttl)
        return RawBlock.from_rpc(block)

    async def _complete_deployment(self, tx: dict[str, Any], height: int) -> None:
        receipt = await self._execute_with_retry("get_transaction_receipt", tx["hash"])
        contract_address = receipt.get("contractAddress") if receipt else None
        if not contract_address:
            return
        tx["contractAddress"] = contract_address
        code = await self._execute_with_retry("get_code", contract_address, height)
        tx["deployedBytecode"] = "0x" + bytes(code).hex()

    # ------------------------------------------------------------------
    # ERC20 metadata
    # ------------------------------------------------------------------

    async def get_erc20_metadata(self, token_address: bytes) -> TokenMetadata | None:
        """Read token metadata; None if the contract does not behave like ERC20."""
        checksum = AsyncWeb3.to_checksum_address("0x" + token_address.hex())
        w3 = self._w3 if self._primary_healthy or self._w3_fallback is None else self._w3_fallback
        standard = w3.eth.contract(address=checksum, abi=_ERC20_METADATA_ABI)

        name = _normalize_text(await self._safe_call(standard, "name"))
        symbol = _normalize_text(await self._safe_call(standard, "symbol"))
        decimals = await self._safe_call(standard, "decimals")
        supply = await self._safe_call(standard, "totalSupply")

        if name is None or symbol is None:
            legacy = w3.eth.contract(address=checksum, abi=_ERC20_LEGACY_ABI)
            if name is None:
                name = _normalize_text(await self._safe_call(legacy, "name"))
            if symbol is None:
                symbol = _normalize_text(await self._safe_call(legacy, "symbol"))

        if not isinstance(decimals, int) or not 0 <= decimals <= 255:
            return None
        if not isinstance(supply, int) or supply < 0:
            return None
        return TokenMetadata(
            name=name or "",
            symbol=symbol or "",
            decimals=decimals,
            total_supply=supply,
        )

    async def _safe_call(self, contract: Any, fn_name: str) -> Any | None:
        await self._rate_limiter.acquire()
        try:
            return await getattr(contract.functions, fn_name)().call()
        except (BadFunctionCallOutput, ContractLogicError, ValueError) as e:
            logger.debug("ERC20 %s() unavailable on %s: %s", fn_name, contract.address, e)
            return None
        except Web3Exception as e:
            raise RPCError(f"ERC20 {fn_name}() call failed on {contract.address}: {e}") from e

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def health_check(self) -> bool:
        try:
            await self._execute_with_retry("get_block_number")
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close the HTTP provider sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)
        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if callable(disconnect):
                await disconnect()
