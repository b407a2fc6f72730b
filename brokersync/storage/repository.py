"""
Committed operation stores.

Both stores implement the CommitSink protocol: commit() replaces the whole
committed list in one step, so readers see either the old list or the new
one, never a mix.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, Integer, String

from brokersync.domain.models import Operation
from brokersync.monitoring.logger import get_logger
from brokersync.storage.db import Base, Database

logger = get_logger(__name__)


# ORM Models
class OperationModel(Base):
    """Committed operation. Decimals are stored as strings to keep them exact."""
    __tablename__ = "operations"
    __table_args__ = (
        Index("idx_operation_order", "order_id", "operation_id"),
        Index("idx_operation_trade_ts", "trade_timestamp"),
    )

    id = Column(String, primary_key=True)
    position = Column(Integer, nullable=False)  # order within the committed list
    order_id = Column(String, nullable=True)
    operation_id = Column(String, nullable=True)
    client_order_id = Column(String, nullable=True)
    original_client_order_id = Column(String, nullable=True)

    symbol = Column(String, nullable=False)
    underlying = Column(String, nullable=True)
    option_type = Column(String, nullable=False)
    strike = Column(String, nullable=True)
    expiration = Column(String, nullable=True)

    side = Column(String, nullable=True)
    quantity = Column(String, nullable=False)
    price = Column(String, nullable=False)
    trade_timestamp = Column(BigInteger, nullable=False)

    status = Column(String, nullable=False)
    cumulative_qty = Column(String, nullable=False)
    average_price = Column(String, nullable=False)
    last_qty = Column(String, nullable=False)
    last_price = Column(String, nullable=False)
    leaves_qty = Column(String, nullable=False)
    text = Column(String, nullable=True)
    source_reference_id = Column(String, nullable=True)

    source = Column(String, nullable=False)
    import_timestamp = Column(BigInteger, nullable=False)
    extracted_from_cancelled = Column(Boolean, nullable=False, default=False)
    original_status = Column(String, nullable=True)
    original_text = Column(String, nullable=True)


class SyncRunModel(Base):
    """Audit row written with every successful commit."""
    __tablename__ = "sync_runs"

    session_id = Column(String, primary_key=True)
    trading_day = Column(String, nullable=True)
    committed_at = Column(DateTime, nullable=False)
    total_operations = Column(Integer, nullable=False)
    new_operations_count = Column(Integer, nullable=False, default=0)
    new_orders_count = Column(Integer, nullable=False, default=0)
    retry_attempts = Column(Integer, nullable=False, default=0)
    pages_fetched = Column(Integer, nullable=False, default=0)
    replaced_count = Column(Integer, nullable=False, default=0)
    extracted_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)


OPERATION_COLUMNS = tuple(c.name for c in OperationModel.__table__.columns if c.name != "position")


def _metadata_dict(metadata: Any) -> Dict[str, Any]:
    if metadata is None:
        return {}
    if isinstance(metadata, Mapping):
        return dict(metadata)
    return metadata.to_dict()


def operation_to_row(op: Operation, position: int) -> OperationModel:
    data = op.to_dict()
    return OperationModel(position=position, **{name: data.get(name) for name in OPERATION_COLUMNS})


def row_to_operation(row: OperationModel) -> Operation:
    return Operation.from_dict({name: getattr(row, name) for name in OPERATION_COLUMNS})


class SqlOperationStore:
    """SQLAlchemy-backed committed operation list."""

    def __init__(self, db: Database):
        self.db = db

    def load(self) -> List[Operation]:
        with self.db.get_session() as session:
            rows = session.query(OperationModel).order_by(OperationModel.position).all()
            return [row_to_operation(r) for r in rows]

    def commit(self, operations: Sequence[Operation], metadata: Any = None) -> None:
        """Replace every stored operation and record the sync run, in one transaction."""
        meta = _metadata_dict(metadata)
        with self.db.get_session() as session:
            session.query(OperationModel).delete(synchronize_session=False)
            session.add_all(operation_to_row(op, i) for i, op in enumerate(operations))
            if meta.get("session_id"):
                session.add(
                    SyncRunModel(
                        session_id=meta["session_id"],
                        trading_day=meta.get("trading_day"),
                        committed_at=datetime.now(timezone.utc),
                        total_operations=len(operations),
                        new_operations_count=meta.get("new_operations_count", 0),
                        new_orders_count=meta.get("new_orders_count", 0),
                        retry_attempts=meta.get("retry_attempts", 0),
                        pages_fetched=meta.get("pages_fetched", 0),
                        replaced_count=meta.get("replaced_count", 0),
                        extracted_count=meta.get("extracted_count", 0),
                        skipped_count=meta.get("skipped_count", 0),
                    )
                )
        logger.info("OPERATIONS_COMMITTED", total=len(operations), session_id=meta.get("session_id"))

    def list_sync_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self.db.get_session() as session:
            rows = (
                session.query(SyncRunModel)
                .order_by(SyncRunModel.committed_at.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "session_id": r.session_id,
                    "trading_day": r.trading_day,
                    "committed_at": r.committed_at.isoformat(),
                    "total_operations": r.total_operations,
                    "new_operations_count": r.new_operations_count,
                    "new_orders_count": r.new_orders_count,
                    "retry_attempts": r.retry_attempts,
                    "pages_fetched": r.pages_fetched,
                }
                for r in rows
            ]


class InMemoryOperationStore:
    """
    Copy-on-write committed list.

    The list is held as a tuple; commit() swaps the reference, so a snapshot
    taken before a commit never changes.
    """

    def __init__(self, operations: Sequence[Operation] = ()):
        self._operations: Tuple[Operation, ...] = tuple(operations)
        self.commits: List[Dict[str, Any]] = []

    def snapshot(self) -> Tuple[Operation, ...]:
        return self._operations

    def load(self) -> List[Operation]:
        return list(self._operations)

    def commit(self, operations: Sequence[Operation], metadata: Optional[Any] = None) -> None:
        self._operations = tuple(operations)
        self.commits.append(_metadata_dict(metadata))
