"""Ledger database: engine construction, schema creation and transactions.

SQLite is the common case (one host, one file next to the job's settings);
PostgreSQL works unchanged for ledgers shared across hosts.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Self

from sqlalchemy import Connection, create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url

from batchledger.contracts.errors import LedgerIntegrityError
from batchledger.core.ledger.schema import metadata

MEMORY_URL = "sqlite:///:memory:"

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA busy_timeout=5000",
)


def _is_sqlite(url: URL) -> bool:
    return url.get_backend_name() == "sqlite"


def _install_sqlite_pragmas(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: object, connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        for pragma in _SQLITE_PRAGMAS:
            cursor.execute(pragma)
        cursor.close()


def create_ledger_engine(url: str) -> Engine:
    """Engine for a ledger URL.

    File-backed SQLite gets its parent directory created and every new
    connection runs the WAL, foreign-key and busy-timeout pragmas.
    """
    parsed = make_url(url)
    if _is_sqlite(parsed):
        database = parsed.database
        if database and database != ":memory:" and not database.startswith("file:"):
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(parsed, echo=False)
    if _is_sqlite(parsed):
        _install_sqlite_pragmas(engine)
    return engine


def check_schema(engine: Engine) -> None:
    """Refuse a database whose ledger tables predate the current schema.

    A database with none of the ledger tables is new and passes; once any
    ledger table exists, every table and column must be present.

    Raises:
        LedgerIntegrityError: If tables or columns are missing
    """
    inspector = inspect(engine)
    existing = set(inspector.get_table_names())
    expected = set(metadata.tables)
    if not existing & expected:
        return

    problems = [f"missing table {name}" for name in sorted(expected - existing)]
    for name in sorted(expected & existing):
        present = {column["name"] for column in inspector.get_columns(name)}
        problems.extend(f"missing column {name}.{column.name}" for column in metadata.tables[name].columns if column.name not in present)

    if problems:
        raise LedgerIntegrityError(
            f"Ledger at {engine.url.render_as_string(hide_password=True)} has an incompatible schema: "
            + "; ".join(problems)
            + ". Point --ledger at a fresh database."
        )


class LedgerDB:
    """Owns the engine every ledger component shares.

    Usage:
        with LedgerDB.from_url("sqlite:///./state/ledger.db") as db:
            with db.connection() as conn:
                conn.execute(jobs_table.select())
    """

    def __init__(self, engine: Engine, *, create_tables: bool = True) -> None:
        check_schema(engine)
        if create_tables:
            metadata.create_all(engine)
        self._engine: Engine | None = engine

    @classmethod
    def from_url(cls, url: str, *, create_tables: bool = True) -> Self:
        return cls(create_ledger_engine(url), create_tables=create_tables)

    @classmethod
    def in_memory(cls) -> Self:
        """Private SQLite database for tests; single-threaded use only."""
        return cls.from_url(MEMORY_URL)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("LedgerDB is closed")
        return self._engine

    @property
    def url(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """One transaction: committed when the block exits, rolled back if it raises."""
        with self.engine.begin() as conn:
            yield conn

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
