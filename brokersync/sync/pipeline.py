"""
Batch processing: Normalizer -> Fill Extractor -> Deduplicator -> Consolidation.

Runs once over everything a sync pass staged. Inputs are never mutated;
the result carries the merged list the controller hands to the commit sink.
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from brokersync.config.config import ProcessingConfig
from brokersync.domain.models import ConsolidatedViews, Operation, OperationSource
from brokersync.exceptions import ValidationError
from brokersync.ingest.dedupe import merge_batch
from brokersync.ingest.normalizer import normalize_operation
from brokersync.monitoring.logger import get_logger
from brokersync.reconciliation.consolidator import build_consolidated_views, select_final_operations
from brokersync.reconciliation.fill_extractor import (
    ExtractionResult,
    ReplacementChainIndex,
    extract_cancelled_fills,
)

logger = get_logger(__name__)


@dataclass
class BatchResult:
    operations: List[Operation]
    new_operations: List[Operation]
    extraction: ExtractionResult
    views: ConsolidatedViews
    replaced_count: int
    retained_count: int
    duplicates_count: int
    dropped_non_final: int

    @property
    def new_operations_count(self) -> int:
        return len(self.new_operations)

    @property
    def new_orders_count(self) -> int:
        return len({op.order_id for op in self.new_operations if op.order_id})


def resolve_trading_day(value: Optional[str], market_timezone: str, now: Optional[datetime] = None) -> str:
    """'today' (or None) becomes the current date in the market timezone; dates pass through as YYYY-MM-DD."""
    if value is None or value.strip().lower() == "today":
        now = now or datetime.now(ZoneInfo(market_timezone))
        return now.astimezone(ZoneInfo(market_timezone)).date().isoformat()
    try:
        return date.fromisoformat(value.strip()).isoformat()
    except ValueError as e:
        raise ValidationError(f"Invalid trading day {value!r}, expected YYYY-MM-DD") from e


def trade_date(op: Operation, market_timezone: str) -> str:
    return datetime.fromtimestamp(op.trade_timestamp / 1000, ZoneInfo(market_timezone)).date().isoformat()


def split_baseline(
    baseline: Sequence[Operation],
    trading_day: str,
    config: ProcessingConfig,
    source: OperationSource = OperationSource.BROKER,
) -> Tuple[List[Operation], List[Operation]]:
    """
    (retained, replaced): replaced is the part of the baseline that came from
    `source` on `trading_day` and is superseded by the new batch.
    """
    if not config.replace_source_window:
        return list(baseline), []
    retained, replaced = [], []
    for op in baseline:
        if op.source == source and trade_date(op, config.market_timezone) == trading_day:
            replaced.append(op)
        else:
            retained.append(op)
    return retained, replaced


def normalize_batch(
    records: Iterable[Mapping[str, Any]],
    source: OperationSource = OperationSource.BROKER,
    now_ms: Optional[int] = None,
) -> List[Operation]:
    return [normalize_operation(record, source, now_ms=now_ms) for record in records]


def process_batch(
    records: Sequence[Mapping[str, Any]],
    baseline: Sequence[Operation],
    trading_day: str,
    config: Optional[ProcessingConfig],
    source: OperationSource = OperationSource.BROKER,
    now_ms: Optional[int] = None,
) -> BatchResult:
    """
    Turn staged raw records into the merged operation list and its views.

    Raises:
        ValidationError: processing configuration missing
        InvariantError: a non-final operation reached consolidation
    """
    if config is None:
        raise ValidationError("Processing configuration is required")

    normalized = normalize_batch(records, source, now_ms)
    extraction = extract_cancelled_fills(normalized, ReplacementChainIndex(normalized))
    final = select_final_operations(extraction.operations, config.executed_statuses)

    retained, replaced = split_baseline(baseline, trading_day, config, source)
    merge = merge_batch(retained, final)
    views = build_consolidated_views(merge.operations, config.executed_statuses)

    result = BatchResult(
        operations=merge.operations,
        new_operations=merge.new_operations,
        extraction=extraction,
        views=views,
        replaced_count=len(replaced),
        retained_count=len(retained),
        duplicates_count=merge.duplicates_count,
        dropped_non_final=len(extraction.operations) - len(final),
    )
    logger.info(
        "BATCH_PROCESSED",
        trading_day=trading_day,
        raw=len(records),
        extracted=extraction.extracted_count,
        skipped=extraction.skipped_count,
        unresolved_replacements=len(extraction.unresolved_replacements),
        non_final=result.dropped_non_final,
        duplicates=result.duplicates_count,
        replaced=result.replaced_count,
        new_operations=result.new_operations_count,
        total=len(result.operations),
    )
    return result
