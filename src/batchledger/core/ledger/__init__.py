"""Ledger: durable state for resumable batch jobs.

Primary API:
    LedgerDB - Database connection management
    WorkCatalog - Source batches and their immutable work items
    JobLedger - Job lifecycle, progress and frozen config
    ResultStore - Insert-or-skip results per (job, item, retry pass)

Every piece of state a resumed run needs lives in these tables; nothing is
kept only in process memory.
"""

from batchledger.core.ledger.catalog import WorkCatalog
from batchledger.core.ledger.database import LedgerDB
from batchledger.core.ledger.jobs import JobLedger, estimate_completion
from batchledger.core.ledger.results import ResultStore
from batchledger.core.ledger.schema import (
    jobs_table,
    metadata,
    results_table,
    resume_locks_table,
    source_batches_table,
    work_items_table,
)

__all__ = [
    "JobLedger",
    "LedgerDB",
    "ResultStore",
    "WorkCatalog",
    "estimate_completion",
    "jobs_table",
    "metadata",
    "results_table",
    "resume_locks_table",
    "source_batches_table",
    "work_items_table",
]
