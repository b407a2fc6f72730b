"""
Integration tests for SyncController.

The broker is replaced by scripted page fetchers; the real pipeline and the
in-memory operation store run underneath.
"""
import asyncio
import itertools
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from brokersync.domain.models import BrokerAuth, OperationsPage
from brokersync.exceptions import (
    AuthenticationError,
    ErrorCategory,
    RateLimitError,
    SyncInProgressError,
    TransientAPIError,
)
from brokersync.storage.repository import InMemoryOperationStore
from brokersync.sync import CancellationToken, ProgressChannel, SyncController
from brokersync.sync.controller import (
    COMMIT_FAILED,
    CONFIGURATION_REQUIRED,
    PROCESSING_FAILED,
    RATE_LIMITED,
    SYNC_PAGE_ERROR,
    TOKEN_EXPIRED,
)
from brokersync.utils.retry import parse_retry_after


class ScriptedFetcher:
    """Returns (or raises) each scripted step in turn; the last step repeats."""

    def __init__(self, *steps, on_call=None):
        self.steps = list(steps)
        self.calls = []
        self.on_call = on_call

    async def fetch(self, token, trading_day, page_token=None):
        self.calls.append((token, trading_day, page_token))
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if self.on_call is not None:
            self.on_call(len(self.calls))
        if isinstance(step, BaseException):
            raise step
        return step


class FakeAuthRefresher:
    def __init__(self, token="tok", error=None):
        self.token = token
        self.error = error
        self.seen = []

    async def ensure_valid_token(self, auth=None):
        self.seen.append(auth)
        if self.error is not None:
            raise self.error
        return self.token


class FailingSink:
    def __init__(self):
        self.calls = 0

    def commit(self, operations, metadata=None):
        self.calls += 1
        raise RuntimeError("disk full")


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def pages(broker_order):
    first = OperationsPage(operations=[broker_order(), broker_order(side="SELL")], next_page_token="p2", estimated_total=3)
    second = OperationsPage(
        operations=[
            broker_order(
                status="CANCELLED",
                orderQty=20,
                cumQty=15,
                leavesQty=5,
                avgPx=38.43,
                price=40,
                text="Cancelled by user",
            )
        ],
        next_page_token=None,
        estimated_total=3,
    )
    return first, second


@pytest.fixture
def make_controller(sync_config, processing_config, sleep):
    def _make(fetcher, store=None, auth=None, processing=processing_config, clock=None):
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        return SyncController(
            fetcher,
            auth or FakeAuthRefresher(),
            store if store is not None else InMemoryOperationStore(),
            sync_config=sync_config,
            processing_config=processing,
            sleep=sleep,
            **kwargs,
        )

    return _make


class TestSuccessfulSync:
    @pytest.mark.asyncio
    async def test_two_pages_commit_once(self, make_controller, pages, make_op, trading_day):
        retained = make_op(order_id="OLD", operation_id="OLD-1", trade_timestamp=0)
        store = InMemoryOperationStore([retained])
        fetcher = ScriptedFetcher(*pages)
        controller = make_controller(fetcher, store)

        result = await controller.run_sync(trading_day, store.load())

        assert result.success
        assert result.pages_fetched == 2
        assert [c[2] for c in fetcher.calls] == [None, "p2"]
        assert result.operations_added == 3
        assert result.total_operations == 4
        assert store.snapshot()[0] == retained
        assert len(store.commits) == 1
        meta = store.commits[0]
        assert meta["session_id"] == result.session_id
        assert meta["trading_day"] == trading_day
        assert meta["pages_fetched"] == 2
        assert meta["extracted_count"] == 1
        assert controller.active_session is None
        assert not controller.is_running

    @pytest.mark.asyncio
    async def test_views_returned_with_result(self, make_controller, pages, trading_day):
        result = await make_controller(ScriptedFetcher(*pages)).run_sync(trading_day, [])

        averaged = result.views.averaged.groups
        assert len(averaged) == 1
        # +10 -10 +15
        assert averaged[0].total_quantity == Decimal("15")
        assert len(result.views.raw.groups) == 3

    @pytest.mark.asyncio
    async def test_auth_is_forwarded_to_refresher(self, make_controller, pages, trading_day):
        refresher = FakeAuthRefresher()
        auth = BrokerAuth(token="old", expiry_ms=0)
        await make_controller(ScriptedFetcher(*pages), auth=refresher).run_sync(trading_day, [], auth=auth)
        assert refresher.seen == [auth]

    @pytest.mark.asyncio
    async def test_async_commit_sink_is_awaited(self, make_controller, pages, trading_day):
        sink = AsyncMock()
        result = await make_controller(ScriptedFetcher(*pages), store=sink).run_sync(trading_day, [])
        assert result.success
        sink.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_progress_events(self, make_controller, pages, trading_day):
        channel = ProgressChannel()
        await make_controller(ScriptedFetcher(*pages)).run_sync(trading_day, [], progress=channel)

        events = [event async for event in channel]

        assert [e.pages_fetched for e in events] == [1, 2]
        assert [e.operations_count for e in events] == [2, 3]
        assert events[-1].estimated_total == 3
        assert channel.closed

    @pytest.mark.asyncio
    async def test_resync_replaces_previous_day_snapshot(self, make_controller, pages, trading_day):
        store = InMemoryOperationStore()
        first = await make_controller(ScriptedFetcher(*pages), store).run_sync(trading_day, store.load())
        second = await make_controller(ScriptedFetcher(*pages), store).run_sync(trading_day, store.load())

        assert first.total_operations == second.total_operations == 3
        assert len(store.load()) == 3

    @pytest.mark.asyncio
    async def test_malformed_timestamp_does_not_fail_pass(self, make_controller, broker_order, trading_day):
        page = OperationsPage(
            operations=[broker_order(), broker_order(transactTime=float("nan"))],
            next_page_token=None,
        )
        store = InMemoryOperationStore()

        result = await make_controller(ScriptedFetcher(page), store).run_sync(trading_day, store.load())

        assert result.success
        assert result.operations_added == 2
        assert len(store.load()) == 2


class TestAtomicity:
    @pytest.mark.asyncio
    async def test_cancel_after_first_page_keeps_baseline(self, make_controller, pages, make_op, trading_day):
        baseline = [make_op()]
        store = InMemoryOperationStore(baseline)
        token = CancellationToken()
        fetcher = ScriptedFetcher(*pages, on_call=lambda n: token.cancel("user"))
        controller = make_controller(fetcher, store)

        result = await controller.run_sync(trading_day, store.load(), cancellation=token)

        assert result.canceled
        assert not result.success
        assert result.category == ErrorCategory.CANCELED
        assert result.pages_fetched == 1
        assert len(fetcher.calls) == 1
        assert store.commits == []
        assert store.load() == baseline

    @pytest.mark.asyncio
    async def test_cancel_before_start_fetches_nothing(self, make_controller, pages, trading_day):
        token = CancellationToken()
        token.cancel()
        fetcher = ScriptedFetcher(*pages)

        result = await make_controller(fetcher).run_sync(trading_day, [], cancellation=token)

        assert result.canceled
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_processing_failure_keeps_baseline(self, make_controller, pages, make_op, trading_day, monkeypatch):
        def explode(*args, **kwargs):
            raise ValueError("bad batch")

        monkeypatch.setattr("brokersync.sync.controller.process_batch", explode)
        baseline = [make_op()]
        store = InMemoryOperationStore(baseline)

        result = await make_controller(ScriptedFetcher(*pages), store).run_sync(trading_day, store.load())

        assert result.error == PROCESSING_FAILED
        assert result.category == ErrorCategory.VALIDATION
        assert store.commits == []
        assert store.load() == baseline

    @pytest.mark.asyncio
    async def test_commit_failure_reported(self, make_controller, pages, make_op, trading_day):
        baseline = [make_op()]
        snapshot = list(baseline)
        sink = FailingSink()

        result = await make_controller(ScriptedFetcher(*pages), store=sink).run_sync(trading_day, baseline)

        assert result.error == COMMIT_FAILED
        assert sink.calls == 1
        assert baseline == snapshot


class TestFetchFailures:
    @pytest.mark.asyncio
    async def test_rate_limit_stops_without_retry(self, make_controller, sleep, trading_day):
        fetcher = ScriptedFetcher(RateLimitError("slow down", retry_after_ms=parse_retry_after("45")))
        store = InMemoryOperationStore()

        result = await make_controller(fetcher, store).run_sync(trading_day, [])

        assert result.error == RATE_LIMITED
        assert result.rate_limited
        assert result.rate_limit_ms == 45000
        assert len(fetcher.calls) == 1
        sleep.assert_not_awaited()
        assert store.commits == []

    @pytest.mark.asyncio
    async def test_rate_limit_default_wait(self, make_controller, trading_day):
        result = await make_controller(ScriptedFetcher(RateLimitError("slow down"))).run_sync(trading_day, [])
        assert result.rate_limit_ms == 60000

    @pytest.mark.asyncio
    async def test_expired_token_fails_before_fetching(self, make_controller, pages, trading_day):
        fetcher = ScriptedFetcher(*pages)
        refresher = FakeAuthRefresher(error=AuthenticationError("expired", status=401))

        result = await make_controller(fetcher, auth=refresher).run_sync(trading_day, [])

        assert result.error == TOKEN_EXPIRED
        assert result.category == ErrorCategory.AUTH
        assert result.needs_reauth
        assert result.pages_fetched == 0
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_auth_error_mid_pagination(self, make_controller, pages, trading_day):
        fetcher = ScriptedFetcher(pages[0], AuthenticationError("revoked", status=401))
        result = await make_controller(fetcher).run_sync(trading_day, [])
        assert result.error == TOKEN_EXPIRED
        assert result.pages_fetched == 1

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, make_controller, sleep, pages, trading_day):
        fetcher = ScriptedFetcher(
            TransientAPIError("502"), TransientAPIError("503"), pages[0], pages[1]
        )

        result = await make_controller(fetcher).run_sync(trading_day, [])

        assert result.success
        assert result.retry_attempts == 2
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_controller, sleep, trading_day):
        fetcher = ScriptedFetcher(TransientAPIError("down"))

        result = await make_controller(fetcher).run_sync(trading_day, [])

        assert result.error == SYNC_PAGE_ERROR
        assert result.category == ErrorCategory.TRANSIENT
        assert result.retry_attempts == 3
        assert len(fetcher.calls) == 4
        assert sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_retry_window_exhausted(self, make_controller, sleep, trading_day):
        clock = itertools.chain([0.0], itertools.repeat(400.0)).__next__
        fetcher = ScriptedFetcher(TransientAPIError("down"))

        result = await make_controller(fetcher, clock=clock).run_sync(trading_day, [])

        assert result.error == SYNC_PAGE_ERROR
        assert len(fetcher.calls) == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repeated_page_token(self, make_controller, broker_order, trading_day):
        looping = OperationsPage(operations=[broker_order()], next_page_token="p2")
        result = await make_controller(ScriptedFetcher(looping)).run_sync(trading_day, [])
        assert result.error == SYNC_PAGE_ERROR
        assert result.pages_fetched == 2


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_missing_processing_config(self, make_controller, pages, trading_day):
        fetcher = ScriptedFetcher(*pages)
        result = await make_controller(fetcher, processing=None).run_sync(trading_day, [])
        assert result.error == CONFIGURATION_REQUIRED
        assert result.category == ErrorCategory.VALIDATION
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_invalid_trading_day(self, make_controller, pages):
        result = await make_controller(ScriptedFetcher(*pages)).run_sync("yesterday-ish", [])
        assert result.error == CONFIGURATION_REQUIRED


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_second_run_rejected_while_active(self, make_controller, broker_order, trading_day):
        release = asyncio.Event()

        class BlockingFetcher:
            async def fetch(self, token, trading_day, page_token=None):
                await release.wait()
                return OperationsPage(operations=[broker_order()])

        controller = make_controller(BlockingFetcher())
        first = asyncio.create_task(controller.run_sync(trading_day, []))
        for _ in range(10):
            await asyncio.sleep(0)
            if controller.is_running:
                break

        assert controller.active_session is not None
        with pytest.raises(SyncInProgressError):
            await controller.run_sync(trading_day, [])

        release.set()
        result = await asyncio.wait_for(first, timeout=1)
        assert result.success
        assert not controller.is_running
