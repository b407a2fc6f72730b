"""
Sync Session Controller.

Drives one synchronization pass:
    token check -> paginated fetch (bounded retry, rate-limit stop)
    -> staged batch -> process_batch -> single commit

Atomicity: the caller's baseline is never mutated. The commit sink is
called exactly once, with the complete merged list, and only when every
page was fetched and processed. Any failure or cancellation discards the
staging buffer and leaves the baseline as it was.

At most one pass runs per controller; a concurrent run_sync() is rejected
with SyncInProgressError.
"""
import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set


from brokersync.config.config import ProcessingConfig, SyncConfig
from brokersync.domain.models import BrokerAuth, ConsolidatedViews, Operation
from brokersync.domain.protocols import AuthRefresher, CommitSink, PageFetcher
from brokersync.exceptions import ErrorCategory, SyncInProgressError, ValidationError, classify_error
from brokersync.monitoring.logger import bind_sync_context, clear_sync_context, get_logger
from brokersync.sync.fetch import fetch_page_with_retry
from brokersync.sync.pipeline import BatchResult, process_batch, resolve_trading_day
from brokersync.sync.progress import ProgressChannel, ProgressEvent
from brokersync.sync.session import SyncSession, SyncStatus

logger = get_logger(__name__)

# Machine-readable failure codes surfaced in SyncResult.error
TOKEN_EXPIRED = "TOKEN_EXPIRED"
RATE_LIMITED = "RATE_LIMITED"
SYNC_PAGE_ERROR = "SYNC_PAGE_ERROR"
CONFIGURATION_REQUIRED = "CONFIGURATION_REQUIRED"
PROCESSING_FAILED = "PROCESSING_FAILED"
COMMIT_FAILED = "COMMIT_FAILED"


class CancellationToken:
    """Cooperative cancellation flag, checked at page and commit checkpoints."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


@dataclass
class CommitMetadata:
    """Session metadata delivered to the commit sink with the merged list."""
    session_id: str
    trading_day: str
    new_operations_count: int
    new_orders_count: int
    retry_attempts: int
    pages_fetched: int
    replaced_count: int = 0
    extracted_count: int = 0
    skipped_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "trading_day": self.trading_day,
            "new_operations_count": self.new_operations_count,
            "new_orders_count": self.new_orders_count,
            "retry_attempts": self.retry_attempts,
            "pages_fetched": self.pages_fetched,
            "replaced_count": self.replaced_count,
            "extracted_count": self.extracted_count,
            "skipped_count": self.skipped_count,
        }


@dataclass
class SyncResult:
    """Outcome of one run_sync() call."""
    success: bool
    session_id: str
    trading_day: Optional[str] = None
    canceled: bool = False
    error: Optional[str] = None
    category: Optional[ErrorCategory] = None
    message: Optional[str] = None
    needs_reauth: bool = False
    rate_limited: bool = False
    rate_limit_ms: Optional[int] = None
    operations_added: int = 0
    new_orders_count: int = 0
    total_operations: int = 0
    pages_fetched: int = 0
    retry_attempts: int = 0
    operations: List[Operation] = field(default_factory=list)
    views: Optional[ConsolidatedViews] = None
    unresolved_replacements: List[Operation] = field(default_factory=list)


class SyncController:
    """
    Owns the session and staging buffer for one pass at a time.

    Collaborators are injected: the page fetcher and auth refresher (usually
    a BrokerClient) and the commit sink (an operation store).
    """

    def __init__(
        self,
        page_fetcher: PageFetcher,
        auth_refresher: AuthRefresher,
        commit_sink: CommitSink,
        sync_config: Optional[SyncConfig] = None,
        processing_config: Optional[ProcessingConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.page_fetcher = page_fetcher
        self.auth_refresher = auth_refresher
        self.commit_sink = commit_sink
        self.sync_config = sync_config or SyncConfig()
        self.processing_config = processing_config
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._active: Optional[SyncSession] = None

    @property
    def active_session(self) -> Optional[SyncSession]:
        return self._active

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run_sync(
        self,
        trading_day: Optional[str],
        baseline: Sequence[Operation],
        auth: Optional[BrokerAuth] = None,
        cancellation: Optional[CancellationToken] = None,
        progress: Optional[ProgressChannel] = None,
    ) -> SyncResult:
        """
        Run one full pass for `trading_day` ("today" or YYYY-MM-DD).

        Raises:
            SyncInProgressError: another pass is active on this controller
        """
        if self._lock.locked():
            raise SyncInProgressError("A sync pass is already running")

        async with self._lock:
            session = SyncSession()
            self._active = session
            bind_sync_context(session.id)
            try:
                return await self._run(session, trading_day, baseline, auth, cancellation or CancellationToken(), progress)
            finally:
                if progress is not None:
                    progress.close()
                clear_sync_context()
                self._active = None

    async def _run(
        self,
        session: SyncSession,
        trading_day: Optional[str],
        baseline: Sequence[Operation],
        auth: Optional[BrokerAuth],
        cancellation: CancellationToken,
        progress: Optional[ProgressChannel],
    ) -> SyncResult:
        if self.processing_config is None:
            return self._fail(session, CONFIGURATION_REQUIRED, ErrorCategory.VALIDATION, "Processing configuration is required")

        try:
            session.trading_day = resolve_trading_day(
                trading_day or self.sync_config.default_trading_day,
                self.processing_config.market_timezone,
            )
        except ValidationError as e:
            return self._fail(session, CONFIGURATION_REQUIRED, ErrorCategory.VALIDATION, str(e))

        bind_sync_context(session.id, session.trading_day)
        logger.info("SYNC_START", baseline=len(baseline))

        if cancellation.is_cancelled:
            return self._cancel(session)

        try:
            token = await self.auth_refresher.ensure_valid_token(auth)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result = self._fail(session, TOKEN_EXPIRED, ErrorCategory.AUTH, str(e))
            result.needs_reauth = True
            return result

        session.transition(SyncStatus.FETCHING)
        page_token: Optional[str] = None
        seen_tokens: Set[str] = set()

        while True:
            if cancellation.is_cancelled:
                return self._cancel(session)

            fetched = await fetch_page_with_retry(
                self.page_fetcher,
                token,
                session.trading_day,
                page_token,
                self.sync_config,
                sleep=self._sleep,
                clock=self._clock,
            )
            session.retry_attempts += fetched.retry_attempts

            if not fetched.success:
                return self._page_failure(session, fetched.category, fetched.message, fetched.rate_limit_ms)

            page = fetched.page
            session.stage_page(list(page.operations or []), page.estimated_total)
            if progress is not None:
                progress.publish(
                    ProgressEvent(
                        page_index=session.pages_fetched - 1,
                        operations_count=session.staged_count,
                        pages_fetched=session.pages_fetched,
                        estimated_total=session.estimated_total,
                    )
                )
            logger.info(
                "SYNC_PAGE_STAGED",
                page_index=session.pages_fetched - 1,
                page_size=len(page.operations or []),
                staged=session.staged_count,
                estimated_total=session.estimated_total,
            )

            page_token = page.next_page_token
            if not page_token:
                break
            if page_token in seen_tokens:
                return self._fail(
                    session, SYNC_PAGE_ERROR, ErrorCategory.VALIDATION, f"Broker repeated page token {page_token!r}"
                )
            seen_tokens.add(page_token)

        session.transition(SyncStatus.STAGED)

        try:
            batch = process_batch(
                session.staging_buffer,
                baseline,
                session.trading_day,
                self.processing_config,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("SYNC_PROCESSING_FAILED", error=str(e), error_type=type(e).__name__)
            return self._fail(session, PROCESSING_FAILED, classify_error(e), str(e))

        if cancellation.is_cancelled:
            return self._cancel(session)

        return await self._commit(session, batch)

    async def _commit(self, session: SyncSession, batch: BatchResult) -> SyncResult:
        metadata = CommitMetadata(
            session_id=session.id,
            trading_day=session.trading_day,
            new_operations_count=batch.new_operations_count,
            new_orders_count=batch.new_orders_count,
            retry_attempts=session.retry_attempts,
            pages_fetched=session.pages_fetched,
            replaced_count=batch.replaced_count,
            extracted_count=batch.extraction.extracted_count,
            skipped_count=batch.extraction.skipped_count,
        )
        try:
            outcome = self.commit_sink.commit(list(batch.operations), metadata)
            if inspect.isawaitable(outcome):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("SYNC_COMMIT_FAILED", error=str(e), error_type=type(e).__name__)
            return self._fail(session, COMMIT_FAILED, classify_error(e), str(e))

        session.transition(SyncStatus.COMMITTED)
        logger.info("SYNC_COMMITTED", **metadata.to_dict(), total=len(batch.operations))
        return SyncResult(
            success=True,
            session_id=session.id,
            trading_day=session.trading_day,
            operations_added=batch.new_operations_count,
            new_orders_count=batch.new_orders_count,
            total_operations=len(batch.operations),
            pages_fetched=session.pages_fetched,
            retry_attempts=session.retry_attempts,
            operations=list(batch.operations),
            views=batch.views,
            unresolved_replacements=list(batch.extraction.unresolved_replacements),
        )

    def _page_failure(
        self,
        session: SyncSession,
        category: Optional[ErrorCategory],
        message: Optional[str],
        rate_limit_ms: Optional[int],
    ) -> SyncResult:
        if category == ErrorCategory.RATE_LIMIT:
            session.rate_limit_wait_ms = rate_limit_ms
            result = self._fail(session, RATE_LIMITED, category, message)
            result.rate_limited = True
            result.rate_limit_ms = rate_limit_ms
            return result
        if category == ErrorCategory.AUTH:
            result = self._fail(session, TOKEN_EXPIRED, category, message)
            result.needs_reauth = True
            return result
        return self._fail(session, SYNC_PAGE_ERROR, category, message)

    def _fail(
        self,
        session: SyncSession,
        code: str,
        category: Optional[ErrorCategory],
        message: Optional[str],
    ) -> SyncResult:
        session.fail(message or code)
        logger.error(
            "SYNC_FAILED",
            error=code,
            category=category.value if category else None,
            message=message,
            pages_fetched=session.pages_fetched,
            retry_attempts=session.retry_attempts,
        )
        return SyncResult(
            success=False,
            session_id=session.id,
            trading_day=session.trading_day,
            error=code,
            category=category,
            message=message,
            pages_fetched=session.pages_fetched,
            retry_attempts=session.retry_attempts,
        )

    def _cancel(self, session: SyncSession) -> SyncResult:
        discarded = session.staged_count
        session.transition(SyncStatus.CANCELED)
        logger.info("SYNC_CANCELED", pages_fetched=session.pages_fetched, discarded=discarded)
        return SyncResult(
            success=False,
            session_id=session.id,
            trading_day=session.trading_day,
            canceled=True,
            category=ErrorCategory.CANCELED,
            message="Sync canceled",
            pages_fetched=session.pages_fetched,
            retry_attempts=session.retry_attempts,
        )
