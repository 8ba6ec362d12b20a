"""Value objects returned across the engine/ledger/CLI boundaries."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from batchledger.contracts.classification import ClassificationFailure, ClassificationOutcome
from batchledger.contracts.enums import ErrorKind, JobStatus
from batchledger.contracts.records import ResumeLock, SourceBatch


@dataclass(frozen=True)
class ItemResult:
    """Outcome of processing one item, ready to be appended to the result store.

    Built by the engine from a classifier answer (or from the exception that
    ended the item's retries). Carries no key - the store pairs it with one.
    """

    is_error: bool
    outcome: dict[str, Any] | None = None
    confidence: float | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    raw_response: str | None = None
    model: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    latency_ms: float | None = None
    attempts: int = 1

    def __post_init__(self) -> None:
        if self.is_error and self.error_kind is None:
            raise ValueError("error ItemResult requires error_kind")
        if not self.is_error and self.outcome is None:
            raise ValueError("successful ItemResult requires an outcome payload")

    @classmethod
    def from_outcome(cls, outcome: ClassificationOutcome, *, attempts: int, latency_ms: float) -> "ItemResult":
        return cls(
            is_error=False,
            outcome=outcome.payload,
            confidence=outcome.confidence,
            raw_response=outcome.raw_response,
            model=outcome.model,
            prompt_tokens=outcome.usage.get("prompt_tokens"),
            completion_tokens=outcome.usage.get("completion_tokens"),
            latency_ms=latency_ms,
            attempts=attempts,
        )

    @classmethod
    def from_failure(cls, failure: ClassificationFailure, *, attempts: int, latency_ms: float) -> "ItemResult":
        return cls(
            is_error=True,
            error_kind=ErrorKind.MALFORMED_RESPONSE,
            error_message=f"{failure.error_kind}: {failure.message}",
            raw_response=failure.raw_response,
            model=failure.model,
            prompt_tokens=failure.usage.get("prompt_tokens"),
            completion_tokens=failure.usage.get("completion_tokens"),
            latency_ms=latency_ms,
            attempts=attempts,
        )

    @classmethod
    def from_error(cls, error_kind: ErrorKind, error: BaseException, *, attempts: int, latency_ms: float) -> "ItemResult":
        return cls(
            is_error=True,
            error_kind=error_kind,
            error_message=f"{type(error).__name__}: {error}",
            latency_ms=latency_ms,
            attempts=attempts,
        )


@dataclass(frozen=True)
class LoadResult:
    """What a source load did.

    Attributes:
        batch: The batch now in the catalog (new or pre-existing)
        already_loaded: True when the same bytes were loaded before and
            nothing was written
        rows_read: Data rows read from the file (0 when already_loaded)
        skipped_blank: Items dropped for a blank id or blank text
        duplicates_dropped: Items dropped because their key was seen earlier
    """

    batch: SourceBatch
    already_loaded: bool
    rows_read: int = 0
    skipped_blank: int = 0
    duplicates_dropped: int = 0


@dataclass
class RunResult:
    """Result of one ExecutionEngine run (start or resume)."""

    job_id: str
    status: JobStatus
    total: int
    completed: int
    processed: int = 0  # results inserted by this run
    skipped: int = 0  # duplicate writes absorbed by this run
    errors: int = 0  # error-flagged results inserted by this run
    retry_pass: int = 0
    cancelled: bool = False
    interrupted: bool = False
    message: str | None = None  # set for no-op runs

    @property
    def noop(self) -> bool:
        return self.message is not None


@dataclass(frozen=True)
class JobStatusReport:
    """Operator-facing snapshot of one job."""

    job_id: str
    name: str
    status: JobStatus
    completed: int
    total: int
    errors: int
    retry_pass: int
    cancel_requested: bool
    estimated_completion_time: datetime | None
    last_progress_update: datetime | None
    lock: ResumeLock | None = None

    @property
    def percent_complete(self) -> float:
        if self.total == 0:
            return 100.0
        return 100.0 * self.completed / self.total
