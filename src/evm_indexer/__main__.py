"""Command-line interface for the EVM indexer."""

import asyncio
import logging

import typer
from dotenv import load_dotenv

from evm_indexer.config import get_settings
from evm_indexer.ingestor.models import to_bytes
from evm_indexer.models import IdentifierKind
from evm_indexer.pipeline import Pipeline
from evm_indexer.storage.database import DatabaseManager

load_dotenv()

app = typer.Typer(help="EVM block indexer with interned identifiers.")

logger = logging.getLogger("evm_indexer")


@app.callback()
def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logger.debug("Settings: %s", settings.redacted_summary())


@app.command("init-db")
def init_db() -> None:
    """Create all tables (use alembic for managed deployments)."""

    async def _run() -> None:
        db = DatabaseManager(get_settings().database.url)
        try:
            await db.init_schema_async()
        finally:
            await db.dispose_async()

    asyncio.run(_run())
    typer.echo("Schema created")


@app.command("sync")
def sync(
    start: int = typer.Argument(..., min=0, help="First height (inclusive)."),
    end: int = typer.Argument(..., min=0, help="Last height (inclusive)."),
) -> None:
    """Ingest a fixed height range."""

    async def _run() -> int | None:
        async with Pipeline(get_settings()) as pipeline:
            last = await pipeline.sync(start, end)
            stats = pipeline.stats
            typer.echo(
                f"committed={stats.blocks_committed} skipped={stats.blocks_skipped} "
                f"retracted={stats.blocks_retracted} txs={stats.transactions_written} "
                f"rejected={stats.transactions_rejected} transfers={stats.transfers_applied}"
            )
            return last

    last = asyncio.run(_run())
    typer.echo(f"Last committed height: {last if last is not None else '-'}")


@app.command("follow")
def follow() -> None:
    """Follow the chain head until interrupted."""
    try:
        asyncio.run(Pipeline(get_settings()).run())
    except KeyboardInterrupt:
        typer.echo("Stopped")


@app.command("stats")
def stats(
    address: str = typer.Argument(..., help="0x-prefixed 20-byte address."),
    token: str | None = typer.Option(
        None, "--token", help="ERC20 contract; native asset if omitted."
    ),
) -> None:
    """Show balance and activity window of an address."""

    async def _run() -> None:
        async with Pipeline(get_settings()) as pipeline:
            row = await pipeline.stats_of(to_bytes(address), to_bytes(token) if token else None)
        if row is None:
            typer.echo("No stats recorded")
            raise typer.Exit(code=1)
        typer.echo(f"balance:   {row.balance}")
        typer.echo(f"first_in:  {row.first_in}")
        typer.echo(f"last_in:   {row.last_in}")
        typer.echo(f"first_out: {row.first_out}")
        typer.echo(f"last_out:  {row.last_out}")

    asyncio.run(_run())


@app.command("lookup")
def lookup(
    value: str = typer.Argument(..., help="0x-prefixed raw value."),
    kind: IdentifierKind = typer.Option(IdentifierKind.EOA, "--kind", case_sensitive=False),
) -> None:
    """Print the interned id of a raw value."""

    async def _run() -> int | None:
        async with Pipeline(get_settings()) as pipeline:
            return await pipeline.identifier_of(to_bytes(value), kind)

    identifier_id = asyncio.run(_run())
    if identifier_id is None:
        typer.echo("Not interned")
        raise typer.Exit(code=1)
    typer.echo(str(identifier_id))


if __name__ == "__main__":
    app()
