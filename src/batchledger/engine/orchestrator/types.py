"""Run-scoped types shared by the orchestrator modules.

This module is a leaf: it must not import from other orchestrator modules.
"""

from dataclasses import dataclass, field
from enum import StrEnum

from batchledger.contracts.enums import AppendOutcome, JobStatus, RunMode
from batchledger.contracts.records import ItemKey, Job, ResumeLock, SourceBatch
from batchledger.contracts.results import ItemResult
from batchledger.core.config import JobSettings


class StopReason(StrEnum):
    """Why the processing loop returned."""

    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"


@dataclass
class ExecutionCounters:
    """Mutable per-run counters. Only results that were actually inserted are counted."""

    processed: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, pending: list[tuple[ItemKey, ItemResult]], outcomes: list[AppendOutcome]) -> None:
        for (_, result), outcome in zip(pending, outcomes, strict=True):
            if outcome == AppendOutcome.DUPLICATE:
                self.skipped += 1
                continue
            self.processed += 1
            if result.is_error:
                self.errors += 1


@dataclass
class RunContext:
    """Everything one run carries between validation, processing and finalization."""

    job: Job
    settings: JobSettings
    batch: SourceBatch
    mode: RunMode
    lock: ResumeLock | None = None
    retry_pass: int = 0
    # Status the job had before this session reopened it
    resumed_from: JobStatus | None = None
    resumed_reason: str | None = None
    buffer: list[tuple[ItemKey, ItemResult]] = field(default_factory=list)
    counters: ExecutionCounters = field(default_factory=ExecutionCounters)
    started_monotonic: float | None = None

    @property
    def job_id(self) -> str:
        return self.job.job_id
