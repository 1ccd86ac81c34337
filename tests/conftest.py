"""Pytest configuration and fixtures."""

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from evm_indexer.config import clear_settings_cache
from evm_indexer.storage.models import Base


def address(n: int) -> bytes:
    """Deterministic 20-byte address."""
    return n.to_bytes(20, "big")


def tx_hash(n: int) -> bytes:
    """Deterministic 32-byte transaction hash."""
    return b"\x7a" + n.to_bytes(31, "big")


def block_hash(n: int) -> bytes:
    """Deterministic 32-byte block hash."""
    return b"\xb0" + n.to_bytes(31, "big")


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite so independent sessions use separate connections."""
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
async def async_engine(database_url: str):
    """Create an async SQLite engine with the full schema."""
    engine = create_async_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory) -> AsyncSession:
    """Create an async session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Keep a developer's .env and environment out of the tests."""
    monkeypatch.chdir(tmp_path)
    for name in ("DATABASE_URL", "REDIS_URL", "EVM_RPC_URL", "EVM_FALLBACK_RPC_URL", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()
