"""
Database connection and session management.
"""
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from chatsync.core.logging import get_logger

logger = get_logger(__name__)

# Message store and profile documents
Base = declarative_base()

# Local cache lives in its own database
CacheBase = declarative_base()


def _ensure_sqlite_dir(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    db_path = database_url.replace("sqlite:///", "")
    if not db_path or db_path == ":memory:":
        return
    if db_path.startswith("./"):
        db_path = db_path[2:]
    db_dir = Path(db_path).parent
    if db_dir and not db_dir.exists():
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created database directory: {db_dir}")


class Database:
    """An engine plus session factory bound to one database URL."""

    def __init__(self, database_url: str, base=Base, echo: bool = False):
        self.url = database_url
        self.base = base

        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            _ensure_sqlite_dir(database_url)

        self.engine = create_engine(
            database_url,
            connect_args=connect_args,
            echo=echo,
            pool_pre_ping=True,
        )

        # Enable foreign keys for SQLite
        if database_url.startswith("sqlite"):
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
        )
        logger.info("Database engine created", extra={"extra_data": {"database_url": database_url}})

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Context manager to get a database session."""
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    def create_all(self) -> None:
        """Create the tables registered on this database's declarative base."""
        # Import to register models
        from chatsync.models import cache, message, profile  # noqa: F401

        self.base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created", extra={"extra_data": {"database_url": self.url}})

    def check_connection(self) -> bool:
        """Check if database is reachable."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()
