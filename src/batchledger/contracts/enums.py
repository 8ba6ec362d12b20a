"""All status codes, modes, and kinds used across subsystem boundaries.

Values are stored in the ledger database as plain strings. Repositories
coerce them back to these enums on read; an unknown value is a crash, not
a default.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """Status of a job.

    Stored in the database (jobs.status).
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class EngineState(StrEnum):
    """Lifecycle state of one ExecutionEngine run.

    Not persisted - the ledger records the job status, the engine tracks
    where it is within a single process.
    """

    NEW = "new"
    VALIDATING = "validating"
    LOCKED = "locked"
    PROCESSING = "processing"
    CHECKPOINTING = "checkpointing"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class RunMode(StrEnum):
    """Which remaining-work set a run processes.

    NORMAL: every in-scope item without a result for the job.
    RETRY_ERRORS: exactly the items whose current result is error-flagged.
    """

    NORMAL = "normal"
    RETRY_ERRORS = "retry_errors"


class AppendOutcome(StrEnum):
    """Result of an insert-or-skip write to the result store."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"


class ResultFilter(StrEnum):
    """Status filter for result store queries."""

    ALL = "all"
    SUCCESS = "success"
    ERROR = "error"


class ErrorKind(StrEnum):
    """Why an item ended with an error-flagged result.

    Stored in the database (results.error_kind).
    """

    TRANSIENT = "transient"  # retries exhausted on a retryable failure
    PERMANENT = "permanent"  # non-retryable service error
    MALFORMED_RESPONSE = "malformed_response"  # response could not be normalised


class SourceFormat(StrEnum):
    """Tabular source file formats the loader understands."""

    CSV = "csv"
    XLSX = "xlsx"
