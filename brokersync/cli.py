"""
CLI entrypoint for the broker sync engine.

Provides commands for sync, process and report.
"""
import asyncio
import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from brokersync.config.config import Config, load_config
from brokersync.domain.models import OperationSource
from brokersync.monitoring.logger import get_logger, setup_logging
from brokersync.reconciliation.consolidator import build_consolidated_views
from brokersync.storage.db import init_db
from brokersync.storage.repository import SqlOperationStore

app = typer.Typer(
    name="broker-sync",
    help="Broker operations sync and consolidation",
    add_completion=False,
)

logger = get_logger(__name__)

DEFAULT_CONFIG = Path(__file__).parent / "config" / "config.yaml"


def _bootstrap(config_path: Path) -> Config:
    config = load_config(str(config_path))
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        config.monitoring.log_file,
    )
    return config


def _read_export(path: Path) -> List[Dict[str, Any]]:
    """A saved export is either a list of records or {"orders": [...]}."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("orders") or data.get("operations") or []
    if not isinstance(data, list):
        raise typer.BadParameter(f"{path} does not contain a list of records")
    return [record for record in data if isinstance(record, dict)]


@app.command()
def sync(
    day: str = typer.Option("today", "--day", help="Trading day (YYYY-MM-DD or 'today')"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Fetch the trading day's orders from the broker and commit them.

    Example:
        broker-sync sync --day 2025-10-20
    """
    config = _bootstrap(config_path)

    from brokersync.data.broker_client import BrokerClient
    from brokersync.sync.controller import SyncController
    from brokersync.sync.progress import ProgressChannel

    store = SqlOperationStore(init_db(config.storage.database_url))

    async def run_sync():
        client = BrokerClient(config.broker)
        controller = SyncController(
            page_fetcher=client,
            auth_refresher=client,
            commit_sink=store,
            sync_config=config.sync,
            processing_config=config.processing,
        )
        progress = ProgressChannel()

        async def report_progress():
            async for event in progress:
                typer.echo(f"  page {event.page_index + 1}: {event.operations_count} operations staged")

        result, _ = await asyncio.gather(
            controller.run_sync(day, store.load(), progress=progress),
            report_progress(),
        )
        await client.close()
        return result

    result = asyncio.run(run_sync())

    if result.success:
        typer.echo(
            f"Synced {result.trading_day}: {result.operations_added} new operations "
            f"({result.new_orders_count} orders), {result.total_operations} total"
        )
        for op in result.unresolved_replacements:
            typer.echo(f"  warning: replaced order {op.order_id} with {op.cumulative_qty} filled has no successor")
        return

    if result.canceled:
        typer.echo("Sync canceled")
        raise typer.Exit(1)
    if result.rate_limited:
        typer.echo(f"Rate limited by broker, retry in {result.rate_limit_ms / 1000:.0f}s", err=True)
        raise typer.Exit(2)
    typer.echo(f"Sync failed [{result.error}]: {result.message}", err=True)
    raise typer.Exit(1)


@app.command()
def process(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Saved broker export (JSON)"),
    day: str = typer.Option("today", "--day", help="Trading day the export belongs to"),
    source: str = typer.Option("broker", "--source", help="Record shape: broker or csv"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Run a saved export through the same pipeline and commit path as sync.
    """
    config = _bootstrap(config_path)

    from brokersync.sync.pipeline import process_batch, resolve_trading_day

    try:
        record_source = OperationSource(source.lower())
    except ValueError:
        raise typer.BadParameter("--source must be 'broker' or 'csv'")

    records = _read_export(file)
    trading_day = resolve_trading_day(day, config.processing.market_timezone)
    store = SqlOperationStore(init_db(config.storage.database_url))

    batch = process_batch(records, store.load(), trading_day, config.processing, source=record_source)
    store.commit(
        batch.operations,
        {
            "session_id": f"file:{file.name}:{trading_day}:{uuid.uuid4().hex}",
            "trading_day": trading_day,
            "new_operations_count": batch.new_operations_count,
            "new_orders_count": batch.new_orders_count,
            "replaced_count": batch.replaced_count,
            "extracted_count": batch.extraction.extracted_count,
            "skipped_count": batch.extraction.skipped_count,
        },
    )
    logger.info("FILE_PROCESSED", file=str(file), records=len(records), committed=len(batch.operations))
    typer.echo(
        f"Processed {len(records)} records: {batch.new_operations_count} new operations, "
        f"{batch.extraction.extracted_count} fills recovered from cancelled orders"
    )


@app.command()
def report(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    output: Optional[Path] = typer.Option(None, "--output", help="Write JSON to this file instead of stdout"),
):
    """
    Print both consolidated views of the committed operations as JSON.
    """
    config = _bootstrap(config_path)
    store = SqlOperationStore(init_db(config.storage.database_url))

    views = build_consolidated_views(store.load(), config.processing.executed_statuses)
    payload = json.dumps(views.to_report(config.processing.report_decimals), indent=2)

    if output:
        output.write_text(payload, encoding="utf-8")
        typer.echo(f"Report written to {output}")
    else:
        typer.echo(payload)


if __name__ == "__main__":
    app()
