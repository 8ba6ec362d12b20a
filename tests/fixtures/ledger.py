"""Ledger database and clock fixtures.

All fixtures are function-scoped for full test isolation.
"""

from collections.abc import Sequence

import pytest

from batchledger.contracts.records import SourceBatch, WorkItem
from batchledger.core.clock import MockClock
from batchledger.core.ledger import LedgerDB, WorkCatalog

DEFAULT_TYPES = ("cme", "le")


def make_ledger_db() -> LedgerDB:
    """Factory for in-memory LedgerDB."""
    return LedgerDB.in_memory()


@pytest.fixture
def ledger_db() -> LedgerDB:
    """Function-scoped in-memory LedgerDB, fresh per test."""
    return make_ledger_db()


@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock()


def catalog_batch(
    db: LedgerDB,
    n_ids: int,
    item_types: Sequence[str] = DEFAULT_TYPES,
    *,
    clock: MockClock | None = None,
    source_name: str = "incidents",
    batch_id: str = "batch-1",
) -> SourceBatch:
    """Insert a batch of n_ids x item_types items directly into the catalog.

    Source ids are zero-padded ("id-0001") so key order matches numeric order.
    """
    clock = clock or MockClock()
    items = [
        WorkItem(
            batch_id=batch_id,
            source_id=f"id-{i:04d}",
            item_type=item_type,
            text=f"narrative {i} {item_type}",
            row_index=i,
            loaded_at=clock.now(),
        )
        for i in range(n_ids)
        for item_type in item_types
    ]
    batch = SourceBatch(
        batch_id=batch_id,
        source_name=source_name,
        source_path=f"/data/{source_name}.csv",
        checksum="0" * 64,
        item_count=len(items),
        duplicate_count=0,
        loaded_at=clock.now(),
    )
    return WorkCatalog(db).insert_batch(batch, items)
