"""
Raw execution record normalization.

Broker API records and flat-file (CSV) rows arrive in different shapes.
They are wrapped once in a tagged union (BrokerRaw | CsvRaw) and resolved
here into the canonical Operation; nothing downstream reads raw fields.

Normalization is pure field mapping and never raises: missing numeric
fields become 0, missing strings become None, unparseable timestamps fall
back to the import time. Validity is decided later (Operation.is_final).
"""
import math
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from brokersync.domain.models import (
    ZERO,
    Operation,
    OperationSource,
    OptionType,
    OrderStatus,
    Side,
)


@dataclass(frozen=True)
class BrokerRaw:
    """Execution report as returned by the broker REST API."""
    payload: Mapping[str, Any] = field(default_factory=dict)
    source = OperationSource.BROKER


@dataclass(frozen=True)
class CsvRaw:
    """One row of a flat-file executions export (already tokenized)."""
    row: Mapping[str, Any] = field(default_factory=dict)
    source = OperationSource.CSV


RawOperation = Union[BrokerRaw, CsvRaw]


# CSV exports use Spanish labels; validators upstream may emit snake_case
STATUS_MAPPING: Dict[str, OrderStatus] = {
    "ejecutada": OrderStatus.FILLED,
    "parcialmente ejecutada": OrderStatus.PARTIALLY_FILLED,
    "cancelada": OrderStatus.CANCELLED,
    "rechazada": OrderStatus.REJECTED,
    "nueva": OrderStatus.NEW,
    "pendiente": OrderStatus.PENDING,
    "fully_executed": OrderStatus.FILLED,
    "partially_executed": OrderStatus.PARTIALLY_FILLED,
    "partial": OrderStatus.PARTIALLY_FILLED,
    "partially filled": OrderStatus.PARTIALLY_FILLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
}

SIDE_MAPPING: Dict[str, Side] = {
    "buy": Side.BUY,
    "compra": Side.BUY,
    "b": Side.BUY,
    "sell": Side.SELL,
    "venta": Side.SELL,
    "s": Side.SELL,
}

OPTION_TYPE_MAPPING: Dict[str, OptionType] = {
    "call": OptionType.CALL,
    "c": OptionType.CALL,
    "put": OptionType.PUT,
    "p": OptionType.PUT,
    "v": OptionType.PUT,
    "stock": OptionType.STOCK,
    "equity": OptionType.STOCK,
    "accion": OptionType.STOCK,
}

# Segments of "MERV - XMEV - GFGC61558D - 24hs" that are not the instrument
MARKET_SEGMENTS = frozenset({"MERV", "XMEV", "CI", "24HS", "48HS", "72HS"})

# <UNDERLYING><C|V><STRIKE><SUFFIX>, e.g. GFGC61558D, YPFV12500N
OPTION_TOKEN_PATTERN = re.compile(r"^([A-Z]{2,5}?)([CV])(\d+(?:\.\d+)?)([A-Z]{0,2})$")

BROKER_TIMESTAMP_PATTERN = re.compile(
    r"^(\d{4})(\d{2})(\d{2})-(\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,6}))?([+-]\d{4})?$"
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    """First value among keys that is neither None nor blank."""
    for key in keys:
        value = data.get(key)
        if not _is_blank(value):
            return value
    return None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a number-like value; None when absent or not a finite number."""
    if _is_blank(value) or isinstance(value, bool):
        return None
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, float):
            result = Decimal(str(value))
        else:
            result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def _first_nonzero_decimal(data: Mapping[str, Any], *keys: str) -> Decimal:
    """First key holding a non-zero number, else 0."""
    for key in keys:
        value = to_decimal(data.get(key))
        if value is not None and value != 0:
            return value
    return ZERO


def _decimal_field(data: Mapping[str, Any], *keys: str) -> Decimal:
    value = to_decimal(_first(data, *keys))
    return value if value is not None else ZERO


def _string_field(data: Mapping[str, Any], *keys: str) -> Optional[str]:
    value = _first(data, *keys)
    if value is None:
        return None
    return str(value).strip()


def parse_trade_timestamp(value: Any, fallback_ms: int) -> int:
    """
    Parse a trade timestamp into epoch milliseconds.

    Accepts epoch-ms numbers, broker timestamps ("20251020-13:58:06.287-0300")
    and ISO-8601 strings with "T" or a space separator. Naive values are UTC.
    """
    if _is_blank(value) or isinstance(value, bool):
        return fallback_ms
    if isinstance(value, (int, float, Decimal)):
        if isinstance(value, float) and not math.isfinite(value):
            return fallback_ms
        if isinstance(value, Decimal) and not value.is_finite():
            return fallback_ms
        return int(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        try:
            return int(dt.timestamp() * 1000)
        except (ValueError, OverflowError):
            return fallback_ms

    text = str(value).strip()
    # isdigit() alone accepts superscripts and other non-ASCII digits
    if text.isascii() and text.isdigit():
        return int(text)

    match = BROKER_TIMESTAMP_PATTERN.match(text)
    try:
        if match:
            year, month, day, hour, minute, second, frac, offset = match.groups()
            micros = int((frac or "0").ljust(6, "0"))
            tz = timezone.utc
            if offset:
                sign = 1 if offset[0] == "+" else -1
                hours, minutes = int(offset[1:3]), int(offset[3:5])
                tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
            dt = datetime(int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tzinfo=tz)
        else:
            iso_candidate = text if "T" in text else text.replace(" ", "T", 1)
            dt = datetime.fromisoformat(iso_candidate.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    except (ValueError, OverflowError):
        # Out-of-range offsets and dates land here
        return fallback_ms


def normalize_status(value: Any) -> OrderStatus:
    """Map broker/CSV status labels onto OrderStatus. Missing means FILLED."""
    if _is_blank(value):
        return OrderStatus.FILLED
    text = str(value).strip()
    mapped = STATUS_MAPPING.get(text.lower())
    if mapped is not None:
        return mapped
    try:
        return OrderStatus(text.upper().replace(" ", "_"))
    except ValueError:
        return OrderStatus.UNKNOWN


def normalize_side(value: Any) -> Optional[Side]:
    if _is_blank(value):
        return None
    return SIDE_MAPPING.get(str(value).strip().lower())


def extract_instrument_token(symbol: Optional[str]) -> str:
    """
    Reduce "MERV - XMEV - GFGC61558D - 24hs" to "GFGC61558D".

    Only the spaced " - " separator splits; hyphenated tickers such as
    "AL30-D" are returned whole.
    """
    if not symbol:
        return ""
    text = str(symbol).strip().upper()
    parts = re.split(r"\s+-\s+", text)
    if len(parts) == 1:
        return text
    for part in parts:
        part = part.strip()
        if not part or part in MARKET_SEGMENTS:
            continue
        if re.match(r"^[A-Z0-9]+", part):
            return part
    return text


def parse_option_token(token: str) -> Optional[Tuple[str, OptionType, Decimal, Optional[str]]]:
    """
    Split an option token into (underlying, option type, strike, expiration suffix).

    Returns None for tokens that are not options (stocks, bonds).
    """
    match = OPTION_TOKEN_PATTERN.match(token or "")
    if not match:
        return None
    underlying, kind, strike, suffix = match.groups()
    option_type = OptionType.CALL if kind == "C" else OptionType.PUT
    return underlying, option_type, Decimal(strike), (suffix or None)


def _resolve_instrument(
    data: Mapping[str, Any],
    raw_symbol: Optional[str],
) -> Tuple[str, Optional[str], OptionType, Optional[Decimal], Optional[str]]:
    symbol = extract_instrument_token(raw_symbol)
    explicit_type = _first(data, "optionType", "option_type")
    explicit_underlying = _string_field(data, "underlying")
    explicit_expiration = _string_field(data, "expirationDate", "expiration_date", "expiration")

    parsed = parse_option_token(symbol)
    if parsed is not None:
        underlying, option_type, strike, suffix = parsed
        # Token strike wins: the broker's raw strike field is unscaled
        return (
            symbol,
            (explicit_underlying or underlying).upper(),
            option_type,
            strike,
            explicit_expiration or suffix,
        )

    if explicit_type is None:
        option_type = OptionType.STOCK
    else:
        option_type = OPTION_TYPE_MAPPING.get(str(explicit_type).strip().lower(), OptionType.UNKNOWN)

    return (
        symbol,
        explicit_underlying.upper() if explicit_underlying else None,
        option_type,
        to_decimal(data.get("strike")),
        explicit_expiration,
    )


def _broker_symbol(data: Mapping[str, Any]) -> Optional[str]:
    instrument = data.get("instrumentId")
    nested = instrument.get("symbol") if isinstance(instrument, Mapping) else None
    return _string_field(data, "symbol") or (str(nested).strip() if nested else None) or _string_field(data, "underlying")


def _normalize_broker(raw: BrokerRaw, now_ms: int, op_id: str) -> Operation:
    data = raw.payload if isinstance(raw.payload, Mapping) else {}
    symbol, underlying, option_type, strike, expiration = _resolve_instrument(data, _broker_symbol(data))

    return Operation(
        id=op_id,
        order_id=_string_field(data, "order_id", "orderId"),
        operation_id=_string_field(data, "operation_id", "execId"),
        client_order_id=_string_field(data, "clOrdId", "client_order_id"),
        original_client_order_id=_string_field(data, "origClOrdId", "original_client_order_id"),
        symbol=symbol,
        underlying=underlying,
        option_type=option_type,
        strike=strike,
        expiration=expiration,
        side=normalize_side(_first(data, "side", "action")),
        # cumQty is the filled amount for broker execution reports
        quantity=_first_nonzero_decimal(data, "quantity", "cumQty", "last_qty", "lastQty"),
        price=_first_nonzero_decimal(data, "price", "last_price", "avgPx", "lastPx"),
        trade_timestamp=parse_trade_timestamp(
            _first(data, "tradeTimestamp", "trade_timestamp", "transactTime"), now_ms
        ),
        status=normalize_status(data.get("status")),
        cumulative_qty=_decimal_field(data, "cumQty", "cum_qty"),
        average_price=_decimal_field(data, "avgPx", "avg_price"),
        last_qty=_decimal_field(data, "lastQty", "last_qty"),
        last_price=_decimal_field(data, "lastPx", "last_price"),
        leaves_qty=_decimal_field(data, "leavesQty", "leaves_qty"),
        text=_string_field(data, "text"),
        source_reference_id=_string_field(data, "sourceReferenceId", "source_reference_id", "numericOrderId"),
        source=OperationSource.BROKER,
        import_timestamp=now_ms,
    )


def _normalize_csv(raw: CsvRaw, now_ms: int, op_id: str) -> Operation:
    row = raw.row if isinstance(raw.row, Mapping) else {}
    raw_symbol = _string_field(row, "symbol", "security_id", "instrument")
    symbol, underlying, option_type, strike, expiration = _resolve_instrument(row, raw_symbol)

    return Operation(
        id=op_id,
        order_id=_string_field(row, "order_id", "orderId"),
        operation_id=_string_field(row, "operation_id", "execution_id"),
        client_order_id=_string_field(row, "last_cl_ord_id", "cl_ord_id"),
        original_client_order_id=_string_field(row, "orig_cl_ord_id"),
        symbol=symbol,
        underlying=underlying,
        option_type=option_type,
        strike=strike,
        expiration=expiration,
        side=normalize_side(_first(row, "side", "action")),
        quantity=_first_nonzero_decimal(row, "quantity", "last_qty", "cum_qty", "order_size"),
        price=_first_nonzero_decimal(row, "price", "last_price", "avg_price", "order_price"),
        trade_timestamp=parse_trade_timestamp(
            _first(row, "transact_time", "trade_timestamp", "tradeTimestamp"), now_ms
        ),
        status=normalize_status(_first(row, "status", "ord_status")),
        cumulative_qty=_decimal_field(row, "cum_qty"),
        average_price=_decimal_field(row, "avg_price"),
        last_qty=_decimal_field(row, "last_qty"),
        last_price=_decimal_field(row, "last_price"),
        leaves_qty=_decimal_field(row, "leaves_qty"),
        text=_string_field(row, "text"),
        source_reference_id=_string_field(row, "source_reference_id"),
        source=OperationSource.CSV,
        import_timestamp=now_ms,
    )


def as_raw(record: Any, source: Union[OperationSource, str]) -> RawOperation:
    """Wrap a plain mapping in the tagged union for its source."""
    if isinstance(record, (BrokerRaw, CsvRaw)):
        return record
    payload = record if isinstance(record, Mapping) else {}
    if OperationSource(source) == OperationSource.CSV:
        return CsvRaw(payload)
    return BrokerRaw(payload)


def normalize_operation(
    raw: Union[RawOperation, Mapping[str, Any]],
    source: Union[OperationSource, str, None] = None,
    *,
    now_ms: Optional[int] = None,
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> Operation:
    """
    Convert one raw record into a canonical Operation.

    Args:
        raw: BrokerRaw/CsvRaw, or a plain mapping together with `source`
        source: required when `raw` is a plain mapping
        now_ms: import time (epoch ms); defaults to the current time
        id_factory: generates the local operation id
    """
    if not isinstance(raw, (BrokerRaw, CsvRaw)):
        raw = as_raw(raw, source or OperationSource.BROKER)
    stamp = now_ms if now_ms is not None else _now_ms()
    if isinstance(raw, CsvRaw):
        return _normalize_csv(raw, stamp, id_factory())
    return _normalize_broker(raw, stamp, id_factory())
