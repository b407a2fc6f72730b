"""
Domain protocols (interfaces) for the sync controller's collaborators.

The controller depends on these abstractions; the aiohttp broker client and
the SQL/in-memory stores implement them, and tests substitute mocks.
"""
from typing import Any, Awaitable, List, Optional, Protocol, Union, runtime_checkable

from brokersync.domain.models import BrokerAuth, Operation, OperationsPage


@runtime_checkable
class PageFetcher(Protocol):
    """
    Fetches one page of raw operations for a trading day.

    Failures must raise typed errors from brokersync.exceptions so the
    controller can tell AUTH, RATE_LIMIT and TRANSIENT apart.
    """

    async def fetch(
        self,
        token: str,
        trading_day: str,
        page_token: Optional[str] = None,
    ) -> OperationsPage: ...


@runtime_checkable
class AuthRefresher(Protocol):
    """Returns a token valid for the whole pass, refreshing it if needed."""

    async def ensure_valid_token(self, auth: Optional[BrokerAuth]) -> str: ...


@runtime_checkable
class CommitSink(Protocol):
    """Receives the merged operation list exactly once per successful sync."""

    def commit(
        self,
        operations: List[Operation],
        metadata: Any,
    ) -> Union[None, Awaitable[None]]: ...
