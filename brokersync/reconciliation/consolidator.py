"""
Consolidation of final operations into net positions.

Two views over the same operation set:
    raw       one row per (order, instrument, side): distinct orders stay visible
    averaged  one row per instrument (symbol, option type, strike, expiration)

BUY adds +quantity and SELL adds -quantity to total_quantity. The average
price is volume-weighted over absolute quantities. No rounding happens
here; see ConsolidatedGroup.to_report().
"""
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from brokersync.domain.models import (
    ZERO,
    ConsolidatedGroup,
    ConsolidatedView,
    ConsolidatedViews,
    Operation,
)
from brokersync.exceptions import InvariantError
from brokersync.monitoring.logger import get_logger

logger = get_logger(__name__)

DEFAULT_EXECUTED_STATUSES = ("FILLED", "PARTIALLY_FILLED")


def select_final_operations(
    operations: Iterable[Operation],
    executed_statuses: Sequence[str] = DEFAULT_EXECUTED_STATUSES,
) -> List[Operation]:
    """Keep executed fills with a side, quantity > 0 and price >= 0."""
    return [op for op in operations if op.is_final(executed_statuses)]


def _raw_key(op: Operation) -> Tuple[Any, ...]:
    order_identity = op.order_id or op.id
    return (order_identity,) + op.instrument_key + (op.side.value,)


def _averaged_key(op: Operation) -> Tuple[Any, ...]:
    return op.instrument_key


def _sort_key(group: ConsolidatedGroup) -> Tuple[Any, ...]:
    return (
        group.symbol,
        group.option_type.value,
        group.strike is not None,
        group.strike if group.strike is not None else ZERO,
        group.expiration or "",
        -group.average_price,
        group.order_id or "",
        group.side.value if group.side else "",
    )


def _reduce(key: Tuple[Any, ...], legs: List[Operation], use_averaging: bool) -> ConsolidatedGroup:
    total = ZERO
    gross = ZERO
    weighted = ZERO
    for leg in legs:
        total += leg.signed_quantity
        gross += leg.quantity
        weighted += leg.quantity * leg.price

    first = legs[0]
    return ConsolidatedGroup(
        key=key,
        symbol=first.symbol,
        option_type=first.option_type,
        strike=first.strike,
        expiration=first.expiration,
        total_quantity=total,
        gross_quantity=gross,
        average_price=weighted / gross,
        legs=list(legs),
        order_id=None if use_averaging else first.order_id,
        side=None if use_averaging else first.side,
    )


def consolidate(
    operations: Sequence[Operation],
    use_averaging: bool,
    executed_statuses: Sequence[str] = DEFAULT_EXECUTED_STATUSES,
) -> ConsolidatedView:
    """
    Group operations and reduce each group to a net position.

    Raises:
        InvariantError: an operation is not final (see select_final_operations)
    """
    buckets: Dict[Tuple[Any, ...], List[Operation]] = {}
    key_fn = _averaged_key if use_averaging else _raw_key

    for op in operations:
        if not op.is_final(executed_statuses):
            raise InvariantError(
                f"Non-final operation {op.id} (status={op.status.value}, "
                f"quantity={op.quantity}) reached consolidation"
            )
        buckets.setdefault(key_fn(op), []).append(op)

    groups = sorted(
        (_reduce(key, legs, use_averaging) for key, legs in buckets.items()),
        key=_sort_key,
    )
    view = ConsolidatedView(
        key="averaged" if use_averaging else "raw",
        use_averaging=use_averaging,
        groups=groups,
        zero_net_count=sum(1 for g in groups if g.is_flat),
    )
    logger.debug(
        "CONSOLIDATION_SUMMARY",
        view=view.key,
        operations=len(operations),
        groups=len(groups),
        zero_net=view.zero_net_count,
    )
    return view


def build_consolidated_views(
    operations: Sequence[Operation],
    executed_statuses: Sequence[str] = DEFAULT_EXECUTED_STATUSES,
) -> ConsolidatedViews:
    """Raw and averaged views of the final subset of operations."""
    final = select_final_operations(operations, executed_statuses)
    return ConsolidatedViews(
        raw=consolidate(final, use_averaging=False, executed_statuses=executed_statuses),
        averaged=consolidate(final, use_averaging=True, executed_statuses=executed_statuses),
    )


def price_bounds(group: ConsolidatedGroup) -> Tuple[Decimal, Decimal]:
    """(min, max) leg price of a group."""
    prices = [leg.price for leg in group.legs]
    return min(prices), max(prices)
