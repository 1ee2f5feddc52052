"""Command line entry point.

    python -m token_transfer_indexer run        # index until interrupted
    python -m token_transfer_indexer once       # a single cycle
    python -m token_transfer_indexer init-db    # create tables without alembic
    python -m token_transfer_indexer transfers --from 0xabc... --limit 5
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click

from token_transfer_indexer import __version__
from token_transfer_indexer.config import Settings, get_settings
from token_transfer_indexer.indexer.service import IndexerService
from token_transfer_indexer.storage.database import DatabaseManager
from token_transfer_indexer.storage.repos import TransferRepository


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


async def _run_forever(settings: Settings) -> None:
    service = IndexerService(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.request_stop)
    await service.run()


async def _run_once(settings: Settings) -> bool:
    async with IndexerService(settings) as service:
        result = await service.run_cycle_safely()
        return result is not None or service.stats.cycles_skipped > 0


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def _print_transfers(
    settings: Settings,
    from_address: str | None,
    to_address: str | None,
    limit: int,
) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        async with db.get_async_session() as session:
            transfers = await TransferRepository(session).list_transfers(
                from_address=from_address,
                to_address=to_address,
                limit=limit,
            )
    finally:
        await db.dispose_async()

    decimals = settings.chain.token_decimals
    for t in transfers:
        click.echo(
            f"{t.block_number}\t{t.tx_hash}:{t.log_index}\t"
            f"{t.from_address} -> {t.to_address}\t{t.amount_decimal(decimals)}"
        )


@click.group()
@click.version_option(__version__, prog_name="token-transfer-indexer")
@click.pass_context
def main(ctx: click.Context) -> None:
    """Bounded ERC20 Transfer indexer."""
    settings = get_settings()
    _configure_logging(settings)
    ctx.obj = settings


@main.command()
@click.pass_obj
def run(settings: Settings) -> None:
    """Index periodically until SIGINT/SIGTERM."""
    asyncio.run(_run_forever(settings))


@main.command()
@click.pass_obj
def once(settings: Settings) -> None:
    """Run a single indexing cycle."""
    if not asyncio.run(_run_once(settings)):
        sys.exit(1)


@main.command("init-db")
@click.pass_obj
def init_db(settings: Settings) -> None:
    """Create the schema directly (use `alembic upgrade head` in production)."""
    asyncio.run(_init_db(settings))
    click.echo("Database schema initialized")


@main.command()
@click.option("--from", "from_address", default=None, help="Only transfers sent by this address.")
@click.option("--to", "to_address", default=None, help="Only transfers received by this address.")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
@click.pass_obj
def transfers(settings: Settings, from_address: str | None, to_address: str | None, limit: int) -> None:
    """Print the most recent stored transfers."""
    asyncio.run(_print_transfers(settings, from_address, to_address, limit))


if __name__ == "__main__":
    main()
