"""
Bounded retry around a single page fetch.

Transient failures are retried with exponential backoff until either the
attempt ceiling or the retry window is reached. Rate limits and
non-transient failures return at once; the caller decides what to do.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from brokersync.config.config import SyncConfig
from brokersync.domain.models import OperationsPage
from brokersync.domain.protocols import PageFetcher
from brokersync.exceptions import ErrorCategory, RateLimitError, classify_error, should_retry
from brokersync.monitoring.logger import get_logger
from brokersync.utils.retry import compute_backoff

logger = get_logger(__name__)


@dataclass
class PageFetchResult:
    success: bool
    page: Optional[OperationsPage] = None
    category: Optional[ErrorCategory] = None
    error: Optional[BaseException] = None
    message: Optional[str] = None
    retry_attempts: int = 0
    rate_limit_ms: Optional[int] = None


async def fetch_page_with_retry(
    fetcher: PageFetcher,
    token: str,
    trading_day: str,
    page_token: Optional[str],
    config: SyncConfig,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PageFetchResult:
    """
    Fetch one page, retrying transient failures.

    Returns:
        PageFetchResult; never raises for fetch errors. asyncio.CancelledError
        is propagated.
    """
    attempts = 0
    started = clock()

    while True:
        try:
            page = await fetcher.fetch(token, trading_day, page_token)
            return PageFetchResult(success=True, page=page, retry_attempts=attempts)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            category = classify_error(e)

            if category == ErrorCategory.RATE_LIMIT:
                wait_ms = e.retry_after_ms if isinstance(e, RateLimitError) else None
                if wait_ms is None:
                    wait_ms = int(config.default_rate_limit_seconds * 1000)
                logger.warning("SYNC_RATE_LIMITED", page_token=page_token, rate_limit_ms=wait_ms)
                return PageFetchResult(
                    success=False,
                    category=category,
                    error=e,
                    message=str(e),
                    retry_attempts=attempts,
                    rate_limit_ms=wait_ms,
                )

            if not should_retry(category):
                return PageFetchResult(
                    success=False, category=category, error=e, message=str(e), retry_attempts=attempts
                )

            elapsed = clock() - started
            if attempts >= config.max_retries or elapsed >= config.max_window_seconds:
                logger.error(
                    "SYNC_RETRY_EXHAUSTED",
                    page_token=page_token,
                    attempts=attempts,
                    elapsed_seconds=round(elapsed, 3),
                    error=str(e),
                )
                return PageFetchResult(
                    success=False, category=category, error=e, message=str(e), retry_attempts=attempts
                )

            attempts += 1
            delay = compute_backoff(
                attempts,
                config.base_delay_seconds,
                config.max_delay_seconds,
                config.jitter_ratio,
            )
            delay = min(delay, max(config.max_window_seconds - elapsed, 0.0))
            logger.warning(
                "SYNC_RETRY",
                page_token=page_token,
                attempt=attempts,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)
