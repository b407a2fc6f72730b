"""
Recover fills from cancelled broker orders.

An order cancelled after a partial execution arrives as status=CANCELLED
with cumulative_qty > 0. That executed quantity is real and is turned
into a synthetic FILLED operation, unless a replacement chain shows that
another message in the batch already accounts for it.
"""
import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from brokersync.domain.models import ZERO, Operation, OrderStatus
from brokersync.monitoring.logger import get_logger

logger = get_logger(__name__)

REPLACED_MARKERS = ("REPLACED", "REEMPLAZADA")


class ReplacementChainIndex:
    """
    original_client_order_id -> successor operation, built once per batch.

    When several operations claim the same original id the last one seen
    wins, matching the order the broker emits amendments in.
    """

    def __init__(self, operations: Iterable[Operation]):
        self._successors: Dict[str, Operation] = {}
        for op in operations:
            if op.original_client_order_id:
                self._successors[op.original_client_order_id] = op

    def __len__(self) -> int:
        return len(self._successors)

    def successor(self, op: Operation) -> Optional[Operation]:
        if not op.client_order_id:
            return None
        return self._successors.get(op.client_order_id)

    def terminal(self, op: Operation) -> Operation:
        """Follow successors to the end of the chain; stops on cycles."""
        seen = {op.client_order_id}
        current = op
        while True:
            nxt = self.successor(current)
            if nxt is None or nxt.client_order_id in seen:
                return current
            seen.add(nxt.client_order_id)
            current = nxt


@dataclass
class ExtractionRecord:
    """Audit entry for one synthesized fill."""
    order_id: Optional[str]
    client_order_id: Optional[str]
    symbol: str
    side: Optional[str]
    quantity: Decimal
    price: Decimal
    value: Decimal
    was_replaced: bool
    terminal_client_order_id: Optional[str]
    original_text: Optional[str]


@dataclass
class ExtractionResult:
    operations: List[Operation]
    extracted_count: int = 0
    skipped_count: int = 0
    metadata: List[ExtractionRecord] = field(default_factory=list)
    # Cancelled-with-fills marked REPLACED whose successor is not in this batch
    unresolved_replacements: List[Operation] = field(default_factory=list)


def _is_cancelled_with_fills(op: Operation) -> bool:
    return op.status == OrderStatus.CANCELLED and op.cumulative_qty > 0


def _marked_replaced(op: Operation) -> bool:
    text = (op.text or "").upper()
    return any(marker in text for marker in REPLACED_MARKERS)


def _successor_covers(successor: Optional[Operation]) -> bool:
    if successor is None:
        return False
    if successor.status == OrderStatus.FILLED:
        return True
    return _is_cancelled_with_fills(successor)


def _synthesize_fill(op: Operation, id_factory: Callable[[], str]) -> Operation:
    qty = op.cumulative_qty
    price = op.average_price if op.average_price > 0 else op.price
    return replace(
        op,
        id=id_factory(),
        operation_id=f"{op.operation_id or 'EXTRACTED'}_FILLED",
        status=OrderStatus.FILLED,
        quantity=qty,
        price=price,
        last_qty=qty,
        last_price=price,
        cumulative_qty=qty,
        leaves_qty=ZERO,
        text=f"Extracted {qty} filled units from cancelled order",
        extracted_from_cancelled=True,
        original_status=op.status,
        original_text=op.text,
    )


def extract_cancelled_fills(
    operations: List[Operation],
    chains: Optional[ReplacementChainIndex] = None,
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> ExtractionResult:
    """
    Replace cancelled-with-fills operations by synthetic FILLED operations.

    Rules, per CANCELLED operation with cumulative_qty > 0:
        - text marks it REPLACED/REEMPLAZADA: skip
        - successor is FILLED, or CANCELLED with fills: skip
        - otherwise: emit a FILLED copy at cumulative_qty @ average_price
    CANCELLED operations with no fills are dropped. Everything else passes
    through unchanged, in input order.
    """
    if not operations:
        return ExtractionResult(operations=[])

    chains = chains if chains is not None else ReplacementChainIndex(operations)
    result = ExtractionResult(operations=[])

    for op in operations:
        if op.status == OrderStatus.CANCELLED and op.cumulative_qty <= 0:
            continue

        if not _is_cancelled_with_fills(op):
            result.operations.append(op)
            continue

        successor = chains.successor(op)

        if _marked_replaced(op):
            result.skipped_count += 1
            if successor is None:
                result.unresolved_replacements.append(op)
                logger.warning(
                    "CANCELLED_REPLACED_WITHOUT_SUCCESSOR",
                    order_id=op.order_id,
                    client_order_id=op.client_order_id,
                    symbol=op.symbol,
                    cumulative_qty=str(op.cumulative_qty),
                )
            else:
                logger.debug("FILL_EXTRACTION_SKIPPED", order_id=op.order_id, reason="marked_replaced")
            continue

        if _successor_covers(successor):
            result.skipped_count += 1
            logger.debug(
                "FILL_EXTRACTION_SKIPPED",
                order_id=op.order_id,
                client_order_id=op.client_order_id,
                successor_status=successor.status.value,
                reason="successor_covers_fill",
            )
            continue

        filled = _synthesize_fill(op, id_factory)
        result.operations.append(filled)
        result.extracted_count += 1
        record = ExtractionRecord(
            order_id=op.order_id,
            client_order_id=op.client_order_id,
            symbol=op.symbol,
            side=op.side.value if op.side else None,
            quantity=filled.quantity,
            price=filled.price,
            value=filled.quantity * filled.price,
            was_replaced=successor is not None,
            terminal_client_order_id=chains.terminal(op).client_order_id,
            original_text=op.text,
        )
        result.metadata.append(record)
        logger.info(
            "FILL_EXTRACTED",
            order_id=record.order_id,
            symbol=record.symbol,
            side=record.side,
            quantity=str(record.quantity),
            price=str(record.price),
        )

    return result


@dataclass
class ExtractionValidation:
    is_valid: bool
    errors: List[str]
    warnings: List[str]
    total_extracted: int
    total_skipped: int
    total_value: Decimal


def validate_extraction(result: ExtractionResult) -> ExtractionValidation:
    """Sanity-check the audit records of an extraction pass."""
    errors: List[str] = []
    warnings: List[str] = []

    for index, record in enumerate(result.metadata):
        if record.quantity <= 0:
            errors.append(f"Extraction {index}: invalid quantity {record.quantity}")
        if record.price <= 0:
            errors.append(f"Extraction {index}: invalid price {record.price}")
        if not record.symbol:
            warnings.append(f"Extraction {index}: missing symbol")
        if not record.side:
            warnings.append(f"Extraction {index}: missing side")

    for op in result.unresolved_replacements:
        warnings.append(
            f"Order {op.order_id or op.client_order_id}: replaced with {op.cumulative_qty} filled, successor not in batch"
        )

    return ExtractionValidation(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        total_extracted=result.extracted_count,
        total_skipped=result.skipped_count,
        total_value=sum((r.value for r in result.metadata), ZERO),
    )
