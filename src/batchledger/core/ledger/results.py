"""Result Store: insert-or-skip persistence of per-item outcomes.

Idempotency is enforced by the database, not by callers:
UNIQUE(job_id, source_id, item_type, retry_pass). A second write for the
same key and pass is absorbed as AppendOutcome.DUPLICATE and never raises.

A retry-errors run writes under a higher retry pass instead of editing the
earlier record. The *current* result for an item is its highest-pass record;
counts and status filters are computed over current results.
"""

from collections.abc import Sequence
from typing import Any

from sqlalchemy import Connection, and_, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from batchledger.contracts.enums import AppendOutcome, ResultFilter
from batchledger.contracts.records import ItemKey, ResultRecord
from batchledger.contracts.results import ItemResult
from batchledger.core.canonical import canonical_json
from batchledger.core.clock import DEFAULT_CLOCK, Clock
from batchledger.core.ledger._database_ops import DatabaseOps
from batchledger.core.ledger._helpers import generate_id
from batchledger.core.ledger.database import LedgerDB
from batchledger.core.ledger.repositories import ResultRepository
from batchledger.core.ledger.schema import results_table
from batchledger.core.logging import get_logger

logger = get_logger(__name__)

_CONFLICT_COLUMNS = ["job_id", "source_id", "item_type", "retry_pass"]


class ResultStore:
    """Append-only store of results per (job, item, retry pass).

    Attributes:
        skipped: Duplicate writes absorbed by this instance
    """

    def __init__(self, db: LedgerDB, *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._clock = clock
        self._repo = ResultRepository()
        self.skipped = 0

    def _row(self, job_id: str, key: ItemKey, result: ItemResult, retry_pass: int) -> dict[str, Any]:
        return {
            "result_id": generate_id(),
            "job_id": job_id,
            "source_id": key.source_id,
            "item_type": key.item_type,
            "retry_pass": retry_pass,
            "is_error": result.is_error,
            "outcome_json": canonical_json(result.outcome) if result.outcome is not None else None,
            "confidence": result.confidence,
            "error_kind": result.error_kind.value if result.error_kind is not None else None,
            "error_message": result.error_message,
            "raw_response": result.raw_response,
            "model": result.model,
            "prompt_tokens": result.prompt_tokens,
            "completion_tokens": result.completion_tokens,
            "latency_ms": result.latency_ms,
            "attempts": result.attempts,
            "recorded_at": self._clock.now(),
        }

    def _insert_or_skip(self, conn: Connection, row: dict[str, Any]) -> AppendOutcome:
        dialect = conn.dialect.name
        if dialect == "sqlite":
            stmt = sqlite_insert(results_table).values(**row).on_conflict_do_nothing(index_elements=_CONFLICT_COLUMNS)
        elif dialect == "postgresql":
            stmt = pg_insert(results_table).values(**row).on_conflict_do_nothing(index_elements=_CONFLICT_COLUMNS)
        else:
            # No native upsert: isolate the insert in a savepoint so a
            # duplicate does not abort the surrounding transaction.
            try:
                with conn.begin_nested():
                    conn.execute(results_table.insert().values(**row))
            except IntegrityError:
                return AppendOutcome.DUPLICATE
            return AppendOutcome.INSERTED

        result = conn.execute(stmt)
        if result.rowcount == 0:
            return AppendOutcome.DUPLICATE
        return AppendOutcome.INSERTED

    def append(self, job_id: str, key: ItemKey, result: ItemResult, *, retry_pass: int = 0) -> AppendOutcome:
        """Record one item's result. A repeat write for the same key and pass is a no-op."""
        with self._db.connection() as conn:
            outcome = self._insert_or_skip(conn, self._row(job_id, key, result, retry_pass))
        if outcome == AppendOutcome.DUPLICATE:
            self.skipped += 1
            logger.debug("result_duplicate_skipped", job_id=job_id, key=str(key), retry_pass=retry_pass)
        return outcome

    def append_many(
        self,
        job_id: str,
        pending: Sequence[tuple[ItemKey, ItemResult]],
        *,
        retry_pass: int = 0,
    ) -> list[AppendOutcome]:
        """Record a buffer of results in one transaction, insert-or-skip per row.

        Either every row is durably inserted-or-skipped, or (on a database
        error) none are and the caller may retry the whole buffer.
        """
        if not pending:
            return []
        with self._db.connection() as conn:
            outcomes = [self._insert_or_skip(conn, self._row(job_id, key, result, retry_pass)) for key, result in pending]
        # Counted only after commit; a rolled-back flush absorbed nothing
        duplicates = sum(1 for outcome in outcomes if outcome == AppendOutcome.DUPLICATE)
        self.skipped += duplicates
        logger.debug(
            "results_flushed",
            job_id=job_id,
            count=len(pending),
            duplicates=duplicates,
            retry_pass=retry_pass,
        )
        return outcomes

    def _current_pass(self, job_id: str) -> Any:
        """Subquery: (source_id, item_type, max retry_pass) for each item of a job."""
        res = results_table.c
        return (
            select(res.source_id, res.item_type, func.max(res.retry_pass).label("current_pass"))
            .where(res.job_id == job_id)
            .group_by(res.source_id, res.item_type)
            .subquery()
        )

    def _current_results(self, job_id: str, status: ResultFilter) -> Any:
        res = results_table.c
        current = self._current_pass(job_id)
        query = select(results_table).join(
            current,
            and_(
                res.source_id == current.c.source_id,
                res.item_type == current.c.item_type,
                res.retry_pass == current.c.current_pass,
            ),
        )
        query = query.where(res.job_id == job_id)
        if status == ResultFilter.ERROR:
            query = query.where(res.is_error.is_(True))
        elif status == ResultFilter.SUCCESS:
            query = query.where(res.is_error.is_(False))
        return query

    def query(self, job_id: str, *, status: ResultFilter = ResultFilter.ALL) -> list[ResultRecord]:
        """Current results of a job filtered by status, in key order.

        ``status=ResultFilter.ERROR`` is the retry-failed-items selection.
        """
        res = results_table.c
        query = self._current_results(job_id, status).order_by(res.source_id, res.item_type)
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query)]

    def get(self, job_id: str, key: ItemKey) -> ResultRecord | None:
        """Current result for one item, if any."""
        res = results_table.c
        query = (
            select(results_table)
            .where(res.job_id == job_id, res.source_id == key.source_id, res.item_type == key.item_type)
            .order_by(res.retry_pass.desc())
            .limit(1)
        )
        row = self._ops.execute_fetchone(query)
        return self._repo.load(row) if row is not None else None

    def count_completed(self, job_id: str) -> int:
        """Distinct items with at least one result for the job."""
        count = self._ops.execute_scalar(select(func.count()).select_from(self._current_pass(job_id)))
        return int(count or 0)

    def count_errors(self, job_id: str) -> int:
        """Items whose current result is error-flagged."""
        sq = self._current_results(job_id, ResultFilter.ERROR).subquery()
        count = self._ops.execute_scalar(select(func.count()).select_from(sq))
        return int(count or 0)

    def count_records(self, job_id: str) -> int:
        """Raw result rows for the job, across all retry passes."""
        count = self._ops.execute_scalar(select(func.count()).select_from(results_table).where(results_table.c.job_id == job_id))
        return int(count or 0)
