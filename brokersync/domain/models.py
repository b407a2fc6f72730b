"""
Domain models for the broker sync engine.

These are the core business objects used throughout the application.
Quantities and prices are Decimals; timestamps are epoch milliseconds (UTC).
"""
from dataclasses import dataclass, field, asdict
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class Side(str, Enum):
    """Trade side."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1


class OptionType(str, Enum):
    """Instrument classification."""
    CALL = "CALL"
    PUT = "PUT"
    STOCK = "STOCK"
    UNKNOWN = "UNKNOWN"


class OrderStatus(str, Enum):
    """Broker order status (FIX-style)."""
    NEW = "NEW"
    PENDING_NEW = "PENDING_NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    PENDING_CANCEL = "PENDING_CANCEL"
    CANCELLED = "CANCELLED"
    PENDING_REPLACE = "PENDING_REPLACE"
    REPLACED = "REPLACED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    PENDING = "PENDING"
    UNKNOWN = "UNKNOWN"


class OperationSource(str, Enum):
    """Where an operation came from."""
    BROKER = "broker"
    CSV = "csv"


ZERO = Decimal("0")


@dataclass(frozen=True)
class Operation:
    """
    Canonical executed-order record.

    Immutable once created. Lifecycle fields (status, cumulative_qty,
    average_price, last_qty, last_price, text) are kept so cancelled fills
    can be recovered later; raw intermediate states may carry quantity 0
    and must be filtered with is_final() before consolidation.
    """
    id: str
    order_id: Optional[str]
    symbol: str
    side: Optional[Side]
    quantity: Decimal
    price: Decimal
    trade_timestamp: int  # epoch ms
    status: OrderStatus
    source: OperationSource
    import_timestamp: int  # epoch ms

    operation_id: Optional[str] = None
    client_order_id: Optional[str] = None
    original_client_order_id: Optional[str] = None

    underlying: Optional[str] = None
    option_type: OptionType = OptionType.STOCK
    strike: Optional[Decimal] = None
    expiration: Optional[str] = None

    cumulative_qty: Decimal = ZERO
    average_price: Decimal = ZERO
    last_qty: Decimal = ZERO
    last_price: Decimal = ZERO
    leaves_qty: Decimal = ZERO
    text: Optional[str] = None
    source_reference_id: Optional[str] = None

    # Audit trail for fills synthesized from cancelled orders
    extracted_from_cancelled: bool = False
    original_status: Optional[OrderStatus] = None
    original_text: Optional[str] = None

    @property
    def has_primary_key(self) -> bool:
        """Both broker identifiers present."""
        return bool(self.order_id) and bool(self.operation_id)

    @property
    def signed_quantity(self) -> Decimal:
        """+quantity for BUY, -quantity for SELL."""
        if self.side is None:
            return ZERO
        return self.quantity * self.side.sign

    @property
    def instrument_key(self) -> Tuple[str, OptionType, Optional[Decimal], Optional[str]]:
        return (self.symbol, self.option_type, self.strike, self.expiration)

    def is_final(self, executed_statuses: Iterable[str] = ("FILLED", "PARTIALLY_FILLED")) -> bool:
        """True if this operation is an executed fill safe to consolidate."""
        return (
            self.status.value in set(executed_statuses)
            and self.side is not None
            and self.quantity > 0
            and self.price >= 0
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dict (Decimals as strings)."""
        out = asdict(self)
        for k, v in out.items():
            if isinstance(v, Decimal):
                out[k] = str(v)
            elif isinstance(v, Enum):
                out[k] = v.value
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Operation":
        """Inverse of to_dict()."""
        def dec(key: str, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
            v = data.get(key)
            return Decimal(str(v)) if v is not None else default

        side = data.get("side")
        original_status = data.get("original_status")
        return cls(
            id=data["id"],
            order_id=data.get("order_id"),
            symbol=data.get("symbol") or "",
            side=Side(side) if side else None,
            quantity=dec("quantity"),
            price=dec("price"),
            trade_timestamp=int(data["trade_timestamp"]),
            status=OrderStatus(data.get("status") or OrderStatus.UNKNOWN.value),
            source=OperationSource(data.get("source") or OperationSource.BROKER.value),
            import_timestamp=int(data.get("import_timestamp") or data["trade_timestamp"]),
            operation_id=data.get("operation_id"),
            client_order_id=data.get("client_order_id"),
            original_client_order_id=data.get("original_client_order_id"),
            underlying=data.get("underlying"),
            option_type=OptionType(data.get("option_type") or OptionType.STOCK.value),
            strike=dec("strike", None),
            expiration=data.get("expiration"),
            cumulative_qty=dec("cumulative_qty"),
            average_price=dec("average_price"),
            last_qty=dec("last_qty"),
            last_price=dec("last_price"),
            leaves_qty=dec("leaves_qty"),
            text=data.get("text"),
            source_reference_id=data.get("source_reference_id"),
            extracted_from_cancelled=bool(data.get("extracted_from_cancelled", False)),
            original_status=OrderStatus(original_status) if original_status else None,
            original_text=data.get("original_text"),
        )


@dataclass(frozen=True)
class BrokerAuth:
    """Broker session credentials held by the application."""
    token: Optional[str]
    expiry_ms: int
    account_id: Optional[str] = None
    display_name: Optional[str] = None

    def expires_within(self, window_ms: int, now_ms: int) -> bool:
        return self.expiry_ms - now_ms <= window_ms


@dataclass
class OperationsPage:
    """One page returned by the page fetcher."""
    operations: List[Dict[str, Any]]
    next_page_token: Optional[str] = None
    estimated_total: Optional[int] = None


def round_report(value: Optional[Decimal], decimals: int = 4) -> Optional[Decimal]:
    """Round half-up for the reporting boundary only."""
    if value is None:
        return None
    return value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


@dataclass
class ConsolidatedGroup:
    """
    Net position for one consolidation key.

    total_quantity is signed (positive = net long, negative = net short);
    average_price is volume-weighted over absolute leg quantities.
    """
    key: Tuple[Any, ...]
    symbol: str
    option_type: OptionType
    strike: Optional[Decimal]
    expiration: Optional[str]
    total_quantity: Decimal
    gross_quantity: Decimal
    average_price: Decimal
    legs: List[Operation] = field(default_factory=list)
    order_id: Optional[str] = None
    side: Optional[Side] = None

    @property
    def is_flat(self) -> bool:
        return self.total_quantity == 0

    def to_report(self, decimals: int = 4) -> Dict[str, Any]:
        """Report row, rounded half-up to `decimals` places."""
        return {
            "symbol": self.symbol,
            "option_type": self.option_type.value,
            "strike": str(self.strike) if self.strike is not None else None,
            "expiration": self.expiration,
            "order_id": self.order_id,
            "side": self.side.value if self.side else None,
            "total_quantity": str(round_report(self.total_quantity, decimals)),
            "average_price": str(round_report(self.average_price, decimals)),
            "legs": [
                {
                    "id": leg.id,
                    "order_id": leg.order_id,
                    "side": leg.side.value if leg.side else None,
                    "quantity": str(leg.quantity),
                    "price": str(leg.price),
                    "extracted_from_cancelled": leg.extracted_from_cancelled,
                }
                for leg in self.legs
            ],
        }


@dataclass
class ConsolidatedView:
    """One consolidation mode over a set of operations."""
    key: str  # "raw" | "averaged"
    use_averaging: bool
    groups: List[ConsolidatedGroup] = field(default_factory=list)
    zero_net_count: int = 0

    @property
    def calls(self) -> List[ConsolidatedGroup]:
        return [g for g in self.groups if g.option_type == OptionType.CALL]

    @property
    def puts(self) -> List[ConsolidatedGroup]:
        return [g for g in self.groups if g.option_type == OptionType.PUT]

    @property
    def stocks(self) -> List[ConsolidatedGroup]:
        return [g for g in self.groups if g.option_type not in (OptionType.CALL, OptionType.PUT)]

    def to_report(self, decimals: int = 4) -> Dict[str, Any]:
        return {
            "key": self.key,
            "use_averaging": self.use_averaging,
            "zero_net_count": self.zero_net_count,
            "groups": [g.to_report(decimals) for g in self.groups],
        }


@dataclass
class ConsolidatedViews:
    """Raw and averaged views of the same operation set."""
    raw: ConsolidatedView
    averaged: ConsolidatedView

    def to_report(self, decimals: int = 4) -> Dict[str, Any]:
        return {
            "raw": self.raw.to_report(decimals),
            "averaged": self.averaged.to_report(decimals),
        }
