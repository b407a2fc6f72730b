"""
Pytest configuration and shared fixtures.
"""
import os

# Keep dotenv files out of test runs (must be before any brokersync imports).
os.environ.setdefault("ENVIRONMENT", "test")

import itertools
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

import pytest

from brokersync.config.config import ProcessingConfig, SyncConfig
from brokersync.domain.models import Operation, OperationSource, OptionType, OrderStatus, Side

TRADING_DAY = "2025-10-20"
# 2025-10-20 13:58:06 in Buenos Aires (UTC-3)
TRADE_TS_MS = int(datetime(2025, 10, 20, 16, 58, 6, tzinfo=timezone.utc).timestamp() * 1000)


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def make_op():
    """Factory for final Operation objects with overridable fields."""
    counter = itertools.count(1)

    def _make(**overrides: Any) -> Operation:
        n = next(counter)
        fields: Dict[str, Any] = dict(
            id=f"op-{n}",
            order_id=f"O{n}",
            operation_id=f"E{n}",
            symbol="GFGC61558D",
            underlying="GFG",
            option_type=OptionType.CALL,
            strike=Decimal("61558"),
            expiration="D",
            side=Side.BUY,
            quantity=Decimal("10"),
            price=Decimal("100"),
            trade_timestamp=TRADE_TS_MS,
            status=OrderStatus.FILLED,
            source=OperationSource.BROKER,
            import_timestamp=TRADE_TS_MS,
        )
        fields.update(overrides)
        return Operation(**fields)

    return _make


@pytest.fixture
def broker_order():
    """Factory for raw broker execution reports (API field names)."""
    counter = itertools.count(1)

    def _make(**overrides: Any) -> Dict[str, Any]:
        n = next(counter)
        record: Dict[str, Any] = {
            "orderId": f"O{n}",
            "clOrdId": f"CL{n}",
            "execId": f"E{n}",
            "accountId": {"id": "REM1234"},
            "instrumentId": {"marketId": "ROFX", "symbol": "MERV - XMEV - GFGC61558D - 24hs"},
            "side": "BUY",
            "price": 100,
            "orderQty": 10,
            "cumQty": 10,
            "leavesQty": 0,
            "avgPx": 100,
            "lastPx": 100,
            "lastQty": 10,
            "ordType": "LIMIT",
            "status": "FILLED",
            "transactTime": "20251020-13:58:06.287-0300",
            "text": " ",
        }
        record.update(overrides)
        return record

    return _make


@pytest.fixture
def processing_config() -> ProcessingConfig:
    return ProcessingConfig()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        max_retries=3,
        base_delay_seconds=2.0,
        max_delay_seconds=30.0,
        max_window_seconds=300.0,
        jitter_ratio=0.0,
        default_rate_limit_seconds=60.0,
    )


@pytest.fixture
def trading_day() -> str:
    return TRADING_DAY


@pytest.fixture
def trade_ts() -> int:
    return TRADE_TS_MS
