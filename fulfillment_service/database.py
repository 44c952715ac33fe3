import time
from typing import Callable, TypeVar

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings
from .errors import TransientInfraError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def make_engine(database_url: str, **kwargs):
    """
    Create the SQLAlchemy engine.

    SQLite ignores SELECT ... FOR UPDATE, so every SQLite transaction is
    started with BEGIN IMMEDIATE instead: it takes the database write lock
    up front and worker threads run their transactions one at a time.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, **kwargs)

    kwargs.setdefault("connect_args", {"check_same_thread": False})
    sqlite_engine = create_engine(database_url, **kwargs)

    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        # Stop pysqlite from emitting its own deferred BEGIN.
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return sqlite_engine


# Get DB connection string from the service settings.
engine = make_engine(get_settings().database_url)

# Create a configured "Session" class.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative models.
Base = declarative_base()


def get_db():
    """Dependency to get a DB session for a request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        # Ensure the session is closed after use.
        db.close()


def run_in_transaction(
    session_factory: Callable[[], Session],
    fn: Callable[[Session], T],
    attempts: int = 3,
    retry_delay: float = 5.0,
) -> T:
    """
    Runs ``fn(session)`` in one transaction and commits it.

    Lock-wait timeouts, deadlocks and dropped connections surface as
    OperationalError; those are retried with a fixed delay. Any other
    exception rolls the transaction back and propagates unchanged, which is
    how callers abort a unit of work on purpose.
    """
    last_error: OperationalError | None = None
    for attempt in range(1, attempts + 1):
        db = session_factory()
        try:
            result = fn(db)
            db.commit()
            return result
        except OperationalError as exc:
            db.rollback()
            last_error = exc
            logger.warning("transaction_retry", attempt=attempt, attempts=attempts, error=str(exc.orig))
            if attempt < attempts:
                time.sleep(retry_delay)
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    raise TransientInfraError(f"Transaction failed after {attempts} attempts: {last_error}") from last_error
