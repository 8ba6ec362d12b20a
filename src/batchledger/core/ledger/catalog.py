"""Work Catalog: the immutable set of work items per loaded source batch.

The catalog is append-only. Items are written once, in the same
transaction as their batch row, and never updated. Remaining work for a job
is always derived from the catalog and the result store in a single query,
never from an in-process list.
"""

from collections.abc import Sequence
from typing import Any

from sqlalchemy import Select, and_, exists, func, select, tuple_

from batchledger.contracts.records import ItemKey, SourceBatch, WorkItem
from batchledger.core.canonical import canonical_json
from batchledger.core.config import ScopeSettings
from batchledger.core.ledger._database_ops import DatabaseOps
from batchledger.core.ledger.database import LedgerDB
from batchledger.core.ledger.repositories import SourceBatchRepository, WorkItemRepository
from batchledger.core.ledger.schema import results_table, source_batches_table, work_items_table
from batchledger.core.logging import get_logger

logger = get_logger(__name__)

# Bound on keys per IN (...) clause; SQLite limits host parameters per statement
_KEY_CHUNK = 400


class WorkCatalog:
    """Read and append access to source batches and their work items."""

    def __init__(self, db: LedgerDB) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._batch_repo = SourceBatchRepository()
        self._item_repo = WorkItemRepository()

    def insert_batch(self, batch: SourceBatch, items: Sequence[WorkItem]) -> SourceBatch:
        """Insert a batch and all of its items in one transaction.

        Raises:
            ValueError: If an item belongs to another batch or item_count disagrees
            sqlalchemy.exc.IntegrityError: If the source name is already catalogued
        """
        if batch.item_count != len(items):
            raise ValueError(f"Batch {batch.batch_id} declares {batch.item_count} items but {len(items)} were given")
        rows: list[dict[str, Any]] = []
        for item in items:
            if item.batch_id != batch.batch_id:
                raise ValueError(f"Item {item.key} belongs to batch {item.batch_id}, not {batch.batch_id}")
            rows.append(
                {
                    "batch_id": item.batch_id,
                    "source_id": item.source_id,
                    "item_type": item.item_type,
                    "text": item.text,
                    "row_index": item.row_index,
                    "attributes_json": canonical_json(item.attributes) if item.attributes else None,
                    "loaded_at": item.loaded_at,
                }
            )

        with self._db.connection() as conn:
            conn.execute(
                source_batches_table.insert().values(
                    batch_id=batch.batch_id,
                    source_name=batch.source_name,
                    source_path=batch.source_path,
                    checksum=batch.checksum,
                    item_count=batch.item_count,
                    duplicate_count=batch.duplicate_count,
                    loaded_at=batch.loaded_at,
                )
            )
            if rows:
                conn.execute(work_items_table.insert(), rows)

        logger.info(
            "batch_catalogued",
            batch_id=batch.batch_id,
            source_name=batch.source_name,
            item_count=batch.item_count,
            duplicate_count=batch.duplicate_count,
        )
        return batch

    def get_batch(self, batch_id: str) -> SourceBatch | None:
        row = self._ops.execute_fetchone(select(source_batches_table).where(source_batches_table.c.batch_id == batch_id))
        return self._batch_repo.load(row) if row is not None else None

    def find_batch_by_source(self, source_name: str) -> SourceBatch | None:
        """Return the batch catalogued for a logical source name, if any."""
        row = self._ops.execute_fetchone(select(source_batches_table).where(source_batches_table.c.source_name == source_name))
        return self._batch_repo.load(row) if row is not None else None

    def _scope_keys(self, batch_id: str, scope: ScopeSettings) -> Select[Any]:
        """Keys of a job's scope: batch items, type-filtered, in key order, limited."""
        wi = work_items_table.c
        query = select(wi.source_id, wi.item_type).where(wi.batch_id == batch_id)
        if scope.item_types is not None:
            query = query.where(wi.item_type.in_(scope.item_types))
        query = query.order_by(wi.source_id, wi.item_type)
        if scope.max_items is not None:
            query = query.limit(scope.max_items)
        return query

    def count_scope(self, batch_id: str, scope: ScopeSettings) -> int:
        """Number of items a job over this batch and scope must process."""
        scope_sq = self._scope_keys(batch_id, scope).subquery()
        count = self._ops.execute_scalar(select(func.count()).select_from(scope_sq))
        return int(count or 0)

    def remaining(self, job_id: str, batch_id: str, scope: ScopeSettings) -> list[WorkItem]:
        """In-scope items with no result of any pass for this job, in key order.

        A single anti-join: scope NOT EXISTS results(job_id, key).
        """
        wi = work_items_table.c
        res = results_table.c
        scope_sq = self._scope_keys(batch_id, scope).subquery()
        has_result = exists().where(
            and_(
                res.job_id == job_id,
                res.source_id == wi.source_id,
                res.item_type == wi.item_type,
            )
        )
        query = (
            select(work_items_table)
            .join(scope_sq, and_(wi.source_id == scope_sq.c.source_id, wi.item_type == scope_sq.c.item_type))
            .where(wi.batch_id == batch_id, ~has_result)
            .order_by(wi.source_id, wi.item_type)
        )
        return [self._item_repo.load(row) for row in self._ops.execute_fetchall(query)]

    def get_items(self, batch_id: str, keys: Sequence[ItemKey]) -> list[WorkItem]:
        """Fetch specific items of a batch, in key order. Unknown keys are absent."""
        if not keys:
            return []
        wi = work_items_table.c
        items: list[WorkItem] = []
        unique_keys = sorted(set(keys))
        with self._db.connection() as conn:
            for start in range(0, len(unique_keys), _KEY_CHUNK):
                chunk = [tuple(k) for k in unique_keys[start : start + _KEY_CHUNK]]
                rows = conn.execute(
                    select(work_items_table).where(
                        wi.batch_id == batch_id,
                        tuple_(wi.source_id, wi.item_type).in_(chunk),
                    )
                ).fetchall()
                items.extend(self._item_repo.load(row) for row in rows)
        items.sort(key=lambda item: item.key)
        return items

    def count_items(self, batch_id: str) -> int:
        count = self._ops.execute_scalar(select(func.count()).select_from(work_items_table).where(work_items_table.c.batch_id == batch_id))
        return int(count or 0)
