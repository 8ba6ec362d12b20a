"""Domain events emitted by the execution engine.

The engine emits, the CLI subscribes. Events are plain frozen dataclasses
so formatters can render them as console text or JSON lines.
"""

from dataclasses import dataclass
from datetime import datetime

from batchledger.contracts.enums import EngineState, JobStatus, RunMode


@dataclass(frozen=True)
class StateChanged:
    """The engine moved between lifecycle states."""

    job_id: str | None
    previous: EngineState
    current: EngineState


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted after every committed checkpoint.

    Attributes:
        job_id: Job being processed
        completed: Items with a result (derived from the result store)
        total: Items in the job's scope
        errors: Items whose current result is error-flagged
        processed_this_run: Results inserted by this process
        eta: Estimated completion time, None until a rate is known
        elapsed_seconds: Time since this process began processing
    """

    job_id: str
    completed: int
    total: int
    errors: int
    processed_this_run: int
    eta: datetime | None
    elapsed_seconds: float


@dataclass(frozen=True)
class RunSummary:
    """Emitted once when a run leaves the engine, whatever the outcome.

    exit_code: 0=completed, 2=failed, 3=interrupted or cancelled
    """

    job_id: str
    status: JobStatus
    mode: RunMode
    processed: int
    skipped: int
    errors: int
    duration_seconds: float
    exit_code: int
