"""
SQLAlchemy engine and sessions for the committed operation store.

SQLite (a file, or `sqlite:///:memory:` for tests) is the default backend;
PostgreSQL is accepted for a shared store.
"""
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from brokersync.monitoring.logger import get_logger

logger = get_logger(__name__)

Base = declarative_base()

SUPPORTED_BACKENDS = ("sqlite", "postgresql")


def _engine_options(url: URL) -> Dict[str, Any]:
    if url.get_backend_name() == "postgresql":
        return {
            "pool_pre_ping": True,
            "pool_size": 5,
            "max_overflow": 10,
            "pool_recycle": 3600,
        }
    options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        # Every session must share the one in-memory database
        options["poolclass"] = StaticPool
    else:
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return options


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for a sqlite:// or postgresql:// URL.

    Raises:
        ValueError: any other backend
    """
    url = make_url(database_url)
    backend = url.get_backend_name()
    if backend not in SUPPORTED_BACKENDS:
        raise ValueError(f"Unsupported database backend {backend!r}; use sqlite:// or postgresql://")
    engine = create_engine(url, **_engine_options(url))
    logger.debug("DATABASE_ENGINE_CREATED", backend=backend, database=url.database)
    return engine


class Database:
    """Engine plus session factory for one database URL."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = build_engine(database_url)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def create_all(self) -> None:
        # Importing the repository registers the ORM models on Base
        import brokersync.storage.repository  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        One transaction: committed when the block exits normally, rolled
        back (and the error re-raised) otherwise.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def init_db(database_url: str) -> Database:
    """Open the database and create missing tables."""
    db = Database(database_url)
    db.create_all()
    return db
