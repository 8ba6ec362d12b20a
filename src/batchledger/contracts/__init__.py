"""Shared contracts for cross-boundary data types.

All dataclasses, enums and exceptions that cross subsystem boundaries are
defined here. This package is a LEAF MODULE with no outbound dependencies
to core/engine. Settings classes live in batchledger.core.config.

Import patterns:
    from batchledger.contracts import JobStatus, ItemKey, ResultRecord
    from batchledger.core.config import JobSettings
"""

from batchledger.contracts.classification import (
    ClassificationFailure,
    ClassificationOutcome,
    ClassificationResult,
)
from batchledger.contracts.enums import (
    TERMINAL_JOB_STATUSES,
    AppendOutcome,
    EngineState,
    ErrorKind,
    JobStatus,
    ResultFilter,
    RunMode,
    SourceFormat,
)
from batchledger.contracts.errors import (
    BatchLedgerError,
    CheckpointError,
    ChecksumMismatchError,
    ConfigSnapshotError,
    IllegalStateTransition,
    JobNotFoundError,
    JobNotResumableError,
    LedgerIntegrityError,
    LockContentionError,
    LockLostError,
    MalformedSourceError,
    SourceReadError,
)
from batchledger.contracts.events import ProgressEvent, RunSummary, StateChanged
from batchledger.contracts.records import (
    ItemKey,
    Job,
    ResultRecord,
    ResumeLock,
    SourceBatch,
    WorkItem,
)
from batchledger.contracts.results import ItemResult, JobStatusReport, LoadResult, RunResult

__all__ = [
    "TERMINAL_JOB_STATUSES",
    "AppendOutcome",
    "BatchLedgerError",
    "CheckpointError",
    "ChecksumMismatchError",
    "ClassificationFailure",
    "ClassificationOutcome",
    "ClassificationResult",
    "ConfigSnapshotError",
    "EngineState",
    "ErrorKind",
    "IllegalStateTransition",
    "ItemKey",
    "ItemResult",
    "Job",
    "JobNotFoundError",
    "JobNotResumableError",
    "JobStatus",
    "JobStatusReport",
    "LedgerIntegrityError",
    "LoadResult",
    "LockContentionError",
    "LockLostError",
    "MalformedSourceError",
    "ProgressEvent",
    "ResultFilter",
    "ResultRecord",
    "ResumeLock",
    "RunMode",
    "RunResult",
    "RunSummary",
    "SourceBatch",
    "SourceFormat",
    "SourceReadError",
    "StateChanged",
    "WorkItem",
]
