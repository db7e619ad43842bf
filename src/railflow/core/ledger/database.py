# src/railflow/core/ledger/database.py
"""Database connection management for the run ledger.

SQLite by default; any SQLAlchemy URL works for the Core tables.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Self

from sqlalchemy import Connection, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from railflow.core.ledger.schema import metadata


class LedgerDB:
    """Run ledger database connection manager."""

    def __init__(self, connection_string: str) -> None:
        """Initialize database connection and create tables.

        Args:
            connection_string: SQLAlchemy connection string
                e.g., "sqlite:///./runs/railflow.db"
        """
        self.connection_string = connection_string
        self._engine: Engine | None = None
        self._setup_engine()
        metadata.create_all(self.engine)

    def _setup_engine(self) -> None:
        url = make_url(self.connection_string)
        if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_engine(self.connection_string, echo=False)
        if self.connection_string.startswith("sqlite"):
            LedgerDB._configure_sqlite(self._engine)

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        """Register a connect hook enabling WAL, foreign keys and a busy timeout."""

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: object, connection_record: object) -> None:
            cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]  # DBAPI connection typed as object
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized")
        return self._engine

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()

    @classmethod
    def in_memory(cls) -> Self:
        """Create an in-memory SQLite database for testing."""
        return cls("sqlite:///:memory:")

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """Connection inside a transaction; commits on exit, rolls back on exception."""
        with self.engine.begin() as conn:
            yield conn
