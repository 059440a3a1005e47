"""Engine and session handling for the snapshot database"""
import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from osutrack.models.db import Base
from osutrack.db_config import DatabaseManager

logger = logging.getLogger(__name__)

# Seconds a SQLite writer waits for another writer's lock before failing
SQLITE_BUSY_TIMEOUT = 30

def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

class Database:
    """
    Owns the engine for the users/updates/hiscores tables and hands out sessions.

    Postgres is the production target; SQLite files work for local runs and tests. The
    ingestion paths open one session per attempt, so a rolled back attempt leaves nothing
    behind for the retry.
    """

    def __init__(self):
        self._engine: Optional[Engine] = None
        self._SessionLocal = None

    def _get_connection_string(self) -> str:
        """DATABASE_URL, or a postgres URL built from the DB_* settings"""
        try:
            return DatabaseManager.initialize_from_env()
        except ValueError as e:
            logger.error(f"No database configured: {e}")
            raise

    def init(self, connection_string: Optional[str] = None) -> None:
        """
        Connect and create any missing tables.

        Args:
            connection_string: SQLAlchemy URL; the configured database when omitted
        """
        try:
            connection_string = connection_string or self._get_connection_string()
            if connection_string.startswith("sqlite"):
                # Pollers and tests share the engine across threads
                self._engine = create_engine(
                    connection_string,
                    connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
                )
                event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
            else:
                self._engine = create_engine(connection_string, pool_pre_ping=True)
            Base.metadata.create_all(self._engine)
            self._SessionLocal = sessionmaker(bind=self._engine, expire_on_commit=False)
            logger.info(f"Snapshot database ready ({self._engine.dialect.name})")

        except SQLAlchemyError as e:
            logger.error(f"Could not set up the snapshot database: {e}")
            raise

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        One unit of work: commits when the block exits cleanly, rolls back on any error.
        Rows stay readable after commit, so results can be built from them outside the block.
        """
        if not self._SessionLocal:
            raise RuntimeError("Database not initialized. Call init() first.")

        session = self._SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_session(self) -> Session:
        """A session the caller commits and closes itself"""
        if not self._SessionLocal:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._SessionLocal()

    def dispose(self) -> None:
        """Close pooled connections; init() must be called again before the next session"""
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._SessionLocal = None

db = Database()
