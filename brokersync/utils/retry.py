import asyncio
import functools
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional

from brokersync.exceptions import classify_error, should_retry
from brokersync.monitoring.logger import get_logger

logger = get_logger(__name__)


def compute_backoff(
    attempt: int,
    base_delay: float = 2.0,
    max_delay: float = 30.0,
    jitter_ratio: float = 0.25,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    Exponential backoff with symmetric jitter.

    attempt is 1-based: the first retry waits base_delay, the second
    2 * base_delay, and so on, capped at max_delay before jitter.

    Returns:
        Delay in seconds (never negative)
    """
    delay = min(base_delay * (2 ** max(attempt - 1, 0)), max_delay)
    if jitter_ratio > 0:
        delay += rng(-jitter_ratio, jitter_ratio) * delay
    return max(delay, 0.0)


def _seconds_to_ms(seconds: float) -> Optional[int]:
    # Infinite or NaN seconds carry no usable delay
    try:
        return max(int(seconds * 1000), 0)
    except (ValueError, OverflowError):
        return None


def parse_retry_after(value: Any, now: Optional[datetime] = None) -> Optional[int]:
    """
    Parse a Retry-After hint into milliseconds.

    Accepts delta-seconds (45, "45", "1.5") or an HTTP-date. Returns None
    when the value is absent or unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _seconds_to_ms(value)

    text = str(value).strip()
    if not text:
        return None
    try:
        return _seconds_to_ms(float(text))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(int((when - now).total_seconds() * 1000), 0)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 2.0,
    max_backoff: float = 30.0,
    jitter_ratio: float = 0.25,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
):
    """
    Decorator to retry async functions on transient errors.

    Errors are classified with classify_error(); AUTH, RATE_LIMIT and
    VALIDATION failures propagate immediately.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        jitter_ratio: +/- fraction of the delay added as jitter
        sleep: awaitable sleep, replaceable in tests
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retry_count = 0

            while True:
                try:
                    return await func(*args, **kwargs)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    category = classify_error(e)
                    if not should_retry(category):
                        raise

                    if retry_count >= max_retries:
                        logger.warning(
                            "RETRY_EXHAUSTED",
                            func=func.__name__,
                            max_retries=max_retries,
                            error=str(e),
                        )
                        raise

                    retry_count += 1
                    backoff = compute_backoff(retry_count, base_delay, max_backoff, jitter_ratio)
                    logger.warning(
                        "RETRY_TRANSIENT_ERROR",
                        func=func.__name__,
                        attempt=retry_count,
                        max_retries=max_retries,
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )
                    await sleep(backoff)

        return wrapper
    return decorator
