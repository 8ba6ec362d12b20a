"""Small helpers shared by the ledger modules."""

import uuid
from datetime import UTC, datetime


def generate_id() -> str:
    """Random 32-character hex identifier for batches, jobs, results and lock tokens."""
    return uuid.uuid4().hex


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a timestamp read back from the database.

    SQLite stores DateTime columns without an offset; everything the
    ledger writes is UTC, so a naive value read back is UTC.
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
