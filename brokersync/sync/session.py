"""
Sync session state machine.

State Machine:
    IDLE -> FETCHING        (token valid, first page requested)
    IDLE -> FAILED          (token could not be validated)
    IDLE -> CANCELED        (cancelled before the first page)
    FETCHING -> STAGED      (last page fetched)
    FETCHING -> FAILED      (page error, rate limit)
    FETCHING -> CANCELED    (cancelled at a page checkpoint)
    STAGED -> COMMITTED     (commit sink accepted the merged list)
    STAGED -> FAILED        (processing or commit error)
    STAGED -> CANCELED      (cancelled before commit)

Terminal States: COMMITTED, FAILED, CANCELED

The staging buffer belongs to one session and is never visible to the
baseline. Leaving through FAILED or CANCELED empties it.
"""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from brokersync.exceptions import InvariantError
from brokersync.monitoring.logger import get_logger

logger = get_logger(__name__)


class SyncStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    STAGED = "staged"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATES: FrozenSet[SyncStatus] = frozenset(
    {SyncStatus.COMMITTED, SyncStatus.FAILED, SyncStatus.CANCELED}
)

VALID_TRANSITIONS: Dict[SyncStatus, FrozenSet[SyncStatus]] = {
    SyncStatus.IDLE: frozenset({SyncStatus.FETCHING, SyncStatus.FAILED, SyncStatus.CANCELED}),
    SyncStatus.FETCHING: frozenset({SyncStatus.STAGED, SyncStatus.FAILED, SyncStatus.CANCELED}),
    SyncStatus.STAGED: frozenset({SyncStatus.COMMITTED, SyncStatus.FAILED, SyncStatus.CANCELED}),
    SyncStatus.COMMITTED: frozenset(),
    SyncStatus.FAILED: frozenset(),
    SyncStatus.CANCELED: frozenset(),
}


def check_invariant(condition: bool, message: str) -> None:
    """Raise InvariantError if condition is false."""
    if not condition:
        logger.critical("INVARIANT_VIOLATION", message=message)
        raise InvariantError(message)


@dataclass
class SyncSession:
    """One synchronization pass. Mutated only by the controller that owns it."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: SyncStatus = SyncStatus.IDLE
    trading_day: Optional[str] = None
    pages_fetched: int = 0
    staging_buffer: List[Dict[str, Any]] = field(default_factory=list)
    retry_attempts: int = 0
    rate_limit_wait_ms: Optional[int] = None
    last_error: Optional[str] = None
    estimated_total: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def staged_count(self) -> int:
        return len(self.staging_buffer)

    def transition(self, new_status: SyncStatus) -> None:
        check_invariant(
            new_status in VALID_TRANSITIONS[self.status],
            f"Illegal sync transition {self.status.value} -> {new_status.value}",
        )
        logger.debug("SYNC_TRANSITION", session_id=self.id, from_status=self.status.value, to_status=new_status.value)
        self.status = new_status
        if new_status in (SyncStatus.FAILED, SyncStatus.CANCELED):
            self.staging_buffer = []

    def stage_page(self, operations: List[Dict[str, Any]], estimated_total: Optional[int] = None) -> None:
        """Append one page of raw records to the staging buffer."""
        check_invariant(
            self.status == SyncStatus.FETCHING,
            f"Cannot stage a page while {self.status.value}",
        )
        self.staging_buffer.extend(operations)
        self.pages_fetched += 1
        if estimated_total is not None:
            self.estimated_total = estimated_total

    def fail(self, message: str) -> None:
        self.last_error = message
        self.transition(SyncStatus.FAILED)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "trading_day": self.trading_day,
            "pages_fetched": self.pages_fetched,
            "staged": self.staged_count,
            "retry_attempts": self.retry_attempts,
            "rate_limit_wait_ms": self.rate_limit_wait_ms,
            "last_error": self.last_error,
        }
