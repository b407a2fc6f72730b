"""
Duplicate detection between an incoming batch and the committed baseline.

Two operations are the same economic event when:
    1. both carry order_id AND operation_id, and that pair is equal, or
    2. otherwise, their composite key matches: instrument identity, side,
       quantity, price and the trade time truncated to the second.

The composite fallback absorbs clock skew between sources that report the
same fill with different millisecond stamps.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from brokersync.domain.models import Operation
from brokersync.monitoring.logger import get_logger

logger = get_logger(__name__)

CompositeKey = Tuple[str, str, Optional[str], Optional[Decimal], Optional[str], Decimal, Decimal, int]


def primary_key(op: Operation) -> Optional[Tuple[str, str]]:
    if not op.has_primary_key:
        return None
    return (op.order_id, op.operation_id)


def composite_key(op: Operation) -> CompositeKey:
    # Decimals compare by value, so 10 and 10.00 collapse to the same key
    return (
        op.symbol,
        op.option_type.value,
        op.side.value if op.side else None,
        op.strike.normalize() if op.strike is not None else None,
        op.expiration,
        op.quantity.normalize(),
        op.price.normalize(),
        op.trade_timestamp // 1000,
    )


def is_duplicate(a: Operation, b: Operation) -> bool:
    """True if a and b describe the same fill."""
    if a.has_primary_key and b.has_primary_key:
        return primary_key(a) == primary_key(b)
    return composite_key(a) == composite_key(b)


class BaselineIndex:
    """
    Hash index over a baseline so each lookup is O(1).

    Primary keys are checked for incoming records that have one. The
    composite index is consulted otherwise; when the incoming record has a
    primary key, only baseline records lacking one may match compositely.
    """

    def __init__(self, baseline: Iterable[Operation]):
        self._primary: Set[Tuple[str, str]] = set()
        self._composite_all: Set[CompositeKey] = set()
        self._composite_keyless: Set[CompositeKey] = set()
        for op in baseline:
            self.add(op)

    def add(self, op: Operation) -> None:
        key = composite_key(op)
        self._composite_all.add(key)
        pk = primary_key(op)
        if pk is not None:
            self._primary.add(pk)
        else:
            self._composite_keyless.add(key)

    def contains(self, op: Operation) -> bool:
        pk = primary_key(op)
        if pk is None:
            return composite_key(op) in self._composite_all
        if pk in self._primary:
            return True
        return composite_key(op) in self._composite_keyless


def dedupe_operations(
    baseline: Sequence[Operation],
    incoming: Sequence[Operation],
) -> List[Operation]:
    """
    Return the incoming operations that have no duplicate in baseline.

    Order of `incoming` is preserved. Records inside `incoming` are not
    compared with each other.
    """
    index = BaselineIndex(baseline)
    kept = [op for op in incoming if not index.contains(op)]
    logger.debug(
        "DEDUPE_SUMMARY",
        baseline=len(baseline),
        incoming=len(incoming),
        kept=len(kept),
        duplicates=len(incoming) - len(kept),
    )
    return kept


@dataclass
class MergeResult:
    """Outcome of merging a new batch into a baseline."""
    operations: List[Operation]
    new_operations: List[Operation]
    duplicates_count: int

    @property
    def new_operations_count(self) -> int:
        return len(self.new_operations)

    @property
    def new_orders_count(self) -> int:
        return len({op.order_id for op in self.new_operations if op.order_id})


def merge_batch(baseline: Sequence[Operation], incoming: Sequence[Operation]) -> MergeResult:
    """Baseline followed by the non-duplicate part of incoming. Inputs are not mutated."""
    new_operations = dedupe_operations(baseline, incoming)
    return MergeResult(
        operations=list(baseline) + new_operations,
        new_operations=new_operations,
        duplicates_count=len(incoming) - len(new_operations),
    )
