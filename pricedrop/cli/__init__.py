# pricedrop/cli/__init__.py
import asyncio
import json

import click

from pricedrop.core.exceptions import CallError, TokenError
from pricedrop.core.logging_config import configure_logging


@click.group()
def cli():
    """pricedrop maintenance commands"""
    configure_logging()


@cli.command("run-tick")
@click.option('--account-id', default=None, help='Only process this account')
@click.option('--listing-id', type=int, default=None, help='Only process this listing')
@click.option('--force', is_flag=True, help='Ignore the next reduction time')
def run_tick(account_id, listing_id, force):
    """Run one price reduction tick now (recorded as manual)"""
    from pricedrop.scheduler import price_reduction_task

    report = asyncio.run(
        price_reduction_task(account_id=account_id, listing_id=listing_id, force=force, trigger="manual")
    )
    click.echo(f"Tick {report.tick_id}: {report.counts}")
    for result in report.results:
        click.echo(
            f"  listing {result.listing_id} [{result.account_id}] {result.outcome.value}: {result.reason}"
            + (f" ({result.old_price} -> {result.new_price})" if result.new_price is not None else "")
        )


@cli.command("sync-listings")
@click.option('--account-id', default=None, help='Only sync this account')
def sync_listings(account_id):
    """Mirror active eBay listings into the local database"""
    from pricedrop.database import async_session
    from pricedrop.services.ebay.importer import build_listing_sync

    async def _sync():
        listing_sync = build_listing_sync(async_session)
        if account_id is None:
            return await listing_sync.sync_all_accounts()
        return {account_id: await listing_sync.sync_account_listings(account_id)}

    try:
        summary = asyncio.run(_sync())
    except (TokenError, CallError) as e:
        raise click.ClickException(f"Listing sync failed: {e.classification} {e.message}")
    click.echo(json.dumps(summary, indent=2))


@cli.command("purge-errors")
def purge_errors():
    """Delete sync errors older than SYNC_ERROR_RETENTION_DAYS"""
    from pricedrop.scheduler import cleanup_sync_errors_task

    deleted = asyncio.run(cleanup_sync_errors_task())
    click.echo(f"Deleted {deleted} sync errors")


if __name__ == "__main__":
    cli()
