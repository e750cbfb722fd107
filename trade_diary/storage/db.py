"""
Database engine and session management.

A Database is constructed explicitly and handed to the repository; there is
no module-level connection. SQLite (local diary files, tests) and
PostgreSQL are both supported.
"""
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Generator
import threading
import time

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import StaticPool

from trade_diary.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str, echo: bool = False):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy URL (sqlite:///path.db, sqlite:///:memory:, postgresql://...)
            echo: Log emitted SQL
        """
        self.database_url = database_url
        url = make_url(database_url)
        # Sessions sharing one StaticPool connection must not interleave
        self._session_lock = None

        if url.get_backend_name() == "sqlite":
            if url.database in (None, "", ":memory:"):
                # One shared connection, otherwise every checkout sees an empty database
                self.engine = create_engine(
                    database_url,
                    echo=echo,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
                self._session_lock = threading.RLock()
            else:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
                self.engine = create_engine(
                    database_url,
                    echo=echo,
                    connect_args={"check_same_thread": False},
                )
        else:
            self.engine = create_engine(
                database_url,
                echo=echo,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=5,
                max_overflow=10,
                pool_recycle=3600,
                pool_timeout=30,
            )

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )
        _register_pool_events(self.engine)

    def create_all(self) -> None:
        """Create all tables."""
        # Importing the repository registers the ORM models on Base.metadata
        import trade_diary.storage.repository  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.debug("Database schema ensured", backend=self.engine.dialect.name)

    def drop_all(self) -> None:
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        """Close all pooled connections."""
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions. Commits on success, rolls back
        and re-raises on any error.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        with self._session_lock or nullcontext():
            session = self.SessionLocal()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()


def init_db(database_url: str, echo: bool = False) -> Database:
    """
    Create a Database and ensure the schema exists.

    Args:
        database_url: SQLAlchemy connection string

    Returns:
        Database instance
    """
    db = Database(database_url, echo=echo)
    db.create_all()
    return db


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

def _register_pool_events(engine) -> None:
    """
    Attach pool event listeners at DEBUG level.

    Logs ``POOL_CHECKOUT`` / ``POOL_CHECKIN`` (with hold time) and
    ``POOL_INVALIDATE``.
    """

    @event.listens_for(engine, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug("POOL_CHECKOUT")

    @event.listens_for(engine, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = (
            round((time.monotonic() - checkout_time) * 1000, 1)
            if checkout_time is not None
            else None
        )
        _pool_logger.debug("POOL_CHECKIN", held_ms=held_ms)

    @event.listens_for(engine, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning(
            "POOL_INVALIDATE",
            error=str(exception) if exception else None,
        )
