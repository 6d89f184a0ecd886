# stocksync/cli/reconcile.py
import asyncio
import json
import logging
from datetime import datetime

import click

from stocksync.core.config import get_settings
from stocksync.core.exceptions import BaseServiceError
from stocksync.core.logging_config import configure_logging
from stocksync.database import get_engine, get_session_factory
from stocksync.integrations.events import LoggingEventSink
from stocksync.integrations.shopify import ShopifyChannelClient
from stocksync.services.inventory_store import SqlInventoryStore
from stocksync.services.job_repository import SqlJobRepository
from stocksync.services.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


@click.command()
@click.option('--batch-size', type=int, default=None, help='Records per page (default DEFAULT_BATCH_SIZE)')
@click.option('--batch-delay', type=float, default=None, help='Seconds between pages')
@click.option('--only-missing', is_flag=True, help='Only records still missing a channel identifier')
@click.option('--only-in-stock', is_flag=True, help='Only records with stock_quantity > 0')
@click.option('--skip-out-of-stock', is_flag=True, help='Count zero-stock records as skipped')
@click.option('--sku', 'skus', multiple=True, help='Restrict to these variant keys (repeatable)')
@click.option('--priority', type=int, default=None, help='Override the computed priority (1-10)')
@click.option('--timeout', type=float, default=None, help='Give up waiting after this many seconds')
@click.option('--json', 'as_json', is_flag=True, help='Print the finished job as JSON')
def reconcile(batch_size, batch_delay, only_missing, only_in_stock, skip_out_of_stock, skus, priority,
              timeout, as_json):
    """Run one manual reconciliation against Shopify and print the summary"""
    configure_logging()

    request = {
        "kind": "manual",
        "batch_size": batch_size,
        "batch_delay": batch_delay,
        "only_missing_identifiers": only_missing,
        "only_in_stock": only_in_stock,
        "update_out_of_stock": not skip_out_of_stock,
        "variant_keys": list(skus) or None,
        "priority": priority,
    }

    start_time = datetime.now()
    logger.info(f"Starting reconciliation at {start_time}")
    try:
        job = asyncio.run(run_reconciliation(request, timeout=timeout))
    except BaseServiceError as e:
        logger.error(f"Reconciliation failed: {e}")
        raise click.ClickException(str(e))
    except asyncio.TimeoutError:
        raise click.ClickException(f"Reconciliation still running after {timeout}s")

    logger.info(f"Finished reconciliation in {datetime.now() - start_time}")
    if as_json:
        click.echo(json.dumps(job, indent=2, default=str))
    else:
        progress = job["progress"]
        click.echo(f"Job {job['id']}: {job['status']}")
        click.echo(f"  scanned:  {progress['scanned']}")
        click.echo(f"  resolved: {progress['resolved']}")
        click.echo(f"  skipped:  {progress['skipped']}")
        if job.get("error"):
            click.echo(f"  error:    {job['error']}")

    if job["status"] != "completed":
        raise SystemExit(1)


async def run_reconciliation(request: dict, timeout=None) -> dict:
    """Build the SQL-backed orchestrator, run one job to completion, return it as a dict."""
    settings = get_settings()
    session_factory = get_session_factory()
    orchestrator = Orchestrator(
        SqlInventoryStore(session_factory),
        ShopifyChannelClient(settings),
        repository=SqlJobRepository(session_factory),
        sink=LoggingEventSink(),
        settings=settings,
    )
    await orchestrator.start()
    try:
        job_id = await orchestrator.enqueue({k: v for k, v in request.items() if v is not None}, actor="cli")
        job = await orchestrator.wait_for(job_id, timeout=timeout)
        return job.to_dict()
    finally:
        await orchestrator.stop()
        await get_engine().dispose()


if __name__ == "__main__":
    reconcile()
