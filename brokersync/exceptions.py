"""
Custom exception hierarchy for the broker sync engine.

Hierarchy:

    BrokerSyncError (base)
    ├── OperationalError     : transient/retryable (broker API, network)
    │   └── APIError         : broker API returned an error
    │       ├── AuthenticationError   (AUTH)
    │       ├── RateLimitError        (RATE_LIMIT)
    │       └── TransientAPIError     (TRANSIENT)
    ├── DataError            : bad input or configuration
    │   └── ValidationError   (VALIDATION)
    ├── InvariantError       : safety violation, abort the pass
    └── SyncInProgressError  : a second sync pass was requested

Rules:
    - TRANSIENT: retry with backoff up to the attempt ceiling
    - AUTH, VALIDATION: fail immediately, no retry
    - RATE_LIMIT: surface the wait hint to the caller, no retry
    - Everything else during a pass: discard the staging buffer and report
"""
import asyncio
from enum import Enum
from typing import Optional

import aiohttp


class ErrorCategory(str, Enum):
    """Error categories used to pick a retry policy."""
    AUTH = "AUTH"
    RATE_LIMIT = "RATE_LIMIT"
    TRANSIENT = "TRANSIENT"
    VALIDATION = "VALIDATION"
    CANCELED = "CANCELED"


class BrokerSyncError(Exception):
    """Base exception for all broker sync errors."""
    category: ErrorCategory = ErrorCategory.TRANSIENT


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(BrokerSyncError):
    """Transient/retryable error: broker API, network, timeouts."""
    category = ErrorCategory.TRANSIENT


class APIError(OperationalError):
    """Broker API returned an error response."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthenticationError(APIError):
    """Token missing, invalid or expired. Fatal to the session."""
    category = ErrorCategory.AUTH


class RateLimitError(APIError):
    """Broker throttled the request (HTTP 429)."""
    category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        message: str,
        status: Optional[int] = 429,
        retry_after_ms: Optional[int] = None,
    ):
        super().__init__(message, status=status)
        self.retry_after_ms = retry_after_ms


class TransientAPIError(APIError):
    """Network failure or 5xx response."""
    category = ErrorCategory.TRANSIENT


# ============ DATA (bad input) ============

class DataError(BrokerSyncError):
    """Bad data or configuration. Not retried."""
    category = ErrorCategory.VALIDATION


class ValidationError(DataError):
    """Malformed request or missing required configuration."""
    category = ErrorCategory.VALIDATION


# ============ INVARIANT (safety violation) ============

class InvariantError(BrokerSyncError):
    """Safety invariant violation. The current pass must be abandoned."""
    category = ErrorCategory.VALIDATION


class SyncInProgressError(BrokerSyncError):
    """Raised when run_sync is called while another pass is active."""
    category = ErrorCategory.VALIDATION


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Map any exception onto an ErrorCategory.

    Typed errors carry their own category. Network-level failures are
    transient; programming/validation errors are not retried. Anything
    unrecognised coming out of an API call is treated as transient.
    """
    if isinstance(error, BrokerSyncError):
        return error.category
    if isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, OSError)):
        return ErrorCategory.TRANSIENT
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ErrorCategory.VALIDATION
    return ErrorCategory.TRANSIENT


def should_retry(category: ErrorCategory) -> bool:
    """Only transient failures are retried."""
    return category == ErrorCategory.TRANSIENT
