"""Ledger contracts for the durable tables.

These are strict contracts - all enum fields use proper enum types.
Repository layer handles string→enum conversion for DB reads.

The ledger database is OUR data. If we read garbage from it, something
catastrophic happened - crash immediately.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NamedTuple

from batchledger.contracts.enums import ErrorKind, JobStatus


def _validate_enum(value: object, enum_type: type, field_name: str) -> None:
    """Validate that value is an instance of the expected enum type."""
    if value is not None and not isinstance(value, enum_type):
        raise TypeError(f"{field_name} must be {enum_type.__name__}, got {type(value).__name__}: {value!r}")


class ItemKey(NamedTuple):
    """Stable composite key of a work item within a batch."""

    source_id: str
    item_type: str

    def __str__(self) -> str:
        return f"{self.source_id}/{self.item_type}"


@dataclass(frozen=True)
class SourceBatch:
    """One load of a logical source into the catalog."""

    batch_id: str
    source_name: str
    source_path: str
    checksum: str
    item_count: int
    duplicate_count: int
    loaded_at: datetime


@dataclass(frozen=True)
class WorkItem:
    """One unit of classification work. Immutable after load."""

    batch_id: str
    source_id: str
    item_type: str
    text: str
    row_index: int
    loaded_at: datetime
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> ItemKey:
        return ItemKey(self.source_id, self.item_type)


@dataclass(frozen=True)
class Job:
    """One execution attempt over a scoped subset of a batch.

    Strict contract - status must be JobStatus enum.
    """

    job_id: str
    name: str
    status: JobStatus
    batch_id: str
    config_json: str
    config_hash: str
    total_item_count: int
    completed_item_count: int
    error_item_count: int
    retry_pass: int
    cancel_requested: bool
    created_at: datetime
    last_progress_update: datetime | None = None
    estimated_completion_time: datetime | None = None
    session_started_at: datetime | None = None
    session_start_count: int = 0
    finished_at: datetime | None = None
    failure_reason: str | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.status, JobStatus, "status")
        if self.completed_item_count > self.total_item_count:
            raise ValueError(
                f"Job {self.job_id}: completed_item_count ({self.completed_item_count}) exceeds total_item_count ({self.total_item_count})"
            )

    @property
    def remaining_item_count(self) -> int:
        return self.total_item_count - self.completed_item_count


@dataclass(frozen=True)
class ResultRecord:
    """Outcome for one (job, item, retry pass).

    Success records carry ``outcome``; error records carry ``error_kind`` and
    ``error_message``. Both may carry the raw external response.
    """

    result_id: str
    job_id: str
    source_id: str
    item_type: str
    retry_pass: int
    is_error: bool
    recorded_at: datetime
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
        _validate_enum(self.error_kind, ErrorKind, "error_kind")
        if self.is_error and self.error_kind is None:
            raise ValueError(f"Error result for {self.source_id}/{self.item_type} must have an error_kind")

    @property
    def key(self) -> ItemKey:
        return ItemKey(self.source_id, self.item_type)


@dataclass(frozen=True)
class ResumeLock:
    """Ephemeral exclusive-owner record for a job."""

    job_id: str
    owner_pid: int
    owner_host: str
    owner_token: str
    acquired_at: datetime
    heartbeat_at: datetime
