"""Job Ledger: durable lifecycle, progress and frozen config of each job.

A job is created RUNNING with its configuration frozen as canonical JSON.
Progress updates are idempotent and monotonic. A terminal status is never
left again, with one exception: a failed or cancelled job whose resumed run
exhausted its work is promoted to completed.
"""

from datetime import datetime, timedelta

from sqlalchemy import select, update

from batchledger.contracts.enums import JobStatus
from batchledger.contracts.errors import JobNotFoundError
from batchledger.contracts.records import Job
from batchledger.core.canonical import CANONICAL_VERSION
from batchledger.core.clock import DEFAULT_CLOCK, Clock
from batchledger.core.config import JobSettings, config_snapshot
from batchledger.core.ledger._database_ops import DatabaseOps
from batchledger.core.ledger._helpers import generate_id
from batchledger.core.ledger.database import LedgerDB
from batchledger.core.ledger.repositories import JobRepository
from batchledger.core.ledger.schema import jobs_table
from batchledger.core.logging import get_logger

logger = get_logger(__name__)


def estimate_completion(
    now: datetime,
    session_started_at: datetime | None,
    session_start_count: int,
    completed: int,
    total: int,
) -> datetime | None:
    """Project the completion time from the current session's rate.

    ETA = now + (elapsed / completed_in_session) x remaining. Only work done
    by the current process counts, so time spent while the job sat crashed
    does not drag the rate down.

    Returns:
        The projected completion time, ``now`` when nothing remains, or None
        when the session has no progress to extrapolate from.
    """
    if completed >= total:
        return now
    done_in_session = completed - session_start_count
    if session_started_at is None or done_in_session <= 0:
        return None
    elapsed = max((now - session_started_at).total_seconds(), 0.0)
    seconds_per_item = elapsed / done_in_session
    return now + timedelta(seconds=seconds_per_item * (total - completed))


class JobLedger:
    """Create, track and finalize jobs."""

    def __init__(self, db: LedgerDB, *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._clock = clock
        self._repo = JobRepository()

    def start(self, settings: JobSettings, batch_id: str, total: int) -> str:
        """Create a RUNNING job over a catalogued batch.

        Args:
            settings: Resolved settings, frozen into the job
            batch_id: Batch the job processes
            total: Number of items in the job's scope

        Returns:
            The new job_id
        """
        if total < 0:
            raise ValueError(f"total must be >= 0, got {total}")
        config_json, config_hash = config_snapshot(settings)
        job_id = generate_id()
        timestamp = self._clock.now()
        self._ops.execute_insert(
            jobs_table.insert().values(
                job_id=job_id,
                name=settings.name,
                status=JobStatus.RUNNING.value,
                batch_id=batch_id,
                config_json=config_json,
                config_hash=config_hash,
                canonical_version=CANONICAL_VERSION,
                total_item_count=total,
                completed_item_count=0,
                error_item_count=0,
                retry_pass=0,
                cancel_requested=False,
                created_at=timestamp,
                last_progress_update=timestamp,
                session_started_at=timestamp,
                session_start_count=0,
            )
        )
        logger.info("job_started", job_id=job_id, name=settings.name, batch_id=batch_id, total=total, config_hash=config_hash[:12])
        return job_id

    def get(self, job_id: str) -> Job:
        """Load a job.

        Raises:
            JobNotFoundError: If no such job exists
        """
        row = self._ops.execute_fetchone(select(jobs_table).where(jobs_table.c.job_id == job_id))
        if row is None:
            raise JobNotFoundError(job_id)
        return self._repo.load(row)

    def find(self, job_id: str) -> Job | None:
        row = self._ops.execute_fetchone(select(jobs_table).where(jobs_table.c.job_id == job_id))
        return self._repo.load(row) if row is not None else None

    def list_jobs(self, *, status: JobStatus | None = None) -> list[Job]:
        """All jobs, newest first, optionally filtered by status."""
        query = select(jobs_table)
        if status is not None:
            query = query.where(jobs_table.c.status == status.value)
        query = query.order_by(jobs_table.c.created_at.desc(), jobs_table.c.job_id)
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query)]

    def begin_session(self, job_id: str, completed: int, *, bump_retry_pass: bool = False) -> Job:
        """Record that a process has started (or resumed) working the job.

        Resets the ETA baseline to this process, clears any cancellation
        request left from an earlier session and, for a retry-errors run,
        opens a new retry pass. The job is running for the whole session,
        whatever status an earlier session left it in, so it can be
        cancelled and reports its true state until finalized again.
        """
        job = self.get(job_id)
        values: dict[str, object] = {
            "status": JobStatus.RUNNING.value,
            "session_started_at": self._clock.now(),
            "session_start_count": completed,
            "cancel_requested": False,
            "finished_at": None,
            "failure_reason": None,
        }
        if bump_retry_pass:
            values["retry_pass"] = job.retry_pass + 1
        self._ops.execute_update(update(jobs_table).where(jobs_table.c.job_id == job_id).values(**values))
        updated = self.get(job_id)
        logger.info(
            "job_session_started",
            job_id=job_id,
            status=updated.status.value,
            completed=completed,
            total=updated.total_item_count,
            retry_pass=updated.retry_pass,
        )
        return updated

    def update_progress(self, job_id: str, completed_count: int, *, error_count: int | None = None) -> Job:
        """Persist progress and a fresh ETA.

        Idempotent: repeating a call with the same count changes nothing but
        the timestamp. The stored count never decreases - a lower count
        (from a stale reader) leaves it unchanged.

        Raises:
            ValueError: If completed_count is negative or exceeds the job total
            JobNotFoundError: If no such job exists
        """
        job = self.get(job_id)
        if completed_count < 0:
            raise ValueError(f"completed_count must be >= 0, got {completed_count}")
        if completed_count > job.total_item_count:
            raise ValueError(f"Job {job_id}: completed_count {completed_count} exceeds total {job.total_item_count}")

        new_count = max(job.completed_item_count, completed_count)
        timestamp = self._clock.now()
        eta = estimate_completion(
            timestamp,
            job.session_started_at,
            job.session_start_count,
            new_count,
            job.total_item_count,
        )
        values: dict[str, object] = {
            "completed_item_count": new_count,
            "last_progress_update": timestamp,
            "estimated_completion_time": eta,
        }
        if error_count is not None:
            values["error_item_count"] = error_count
        # Conditional on the stored count so a concurrent lower write cannot regress it;
        # zero rows matched means someone already recorded more progress.
        with self._db.connection() as conn:
            conn.execute(
                update(jobs_table)
                .where(jobs_table.c.job_id == job_id, jobs_table.c.completed_item_count <= new_count)
                .values(**values)
            )
        logger.debug("job_progress", job_id=job_id, completed=new_count, total=job.total_item_count, eta=eta.isoformat() if eta else None)
        return self.get(job_id)

    def finalize(self, job_id: str, status: JobStatus, *, reason: str | None = None) -> Job:
        """Move a job to a terminal status.

        Already-terminal jobs are left unchanged (with a warning), except that
        a failed or cancelled job may be promoted to completed.

        Raises:
            ValueError: If status is not terminal
            JobNotFoundError: If no such job exists
        """
        if not status.is_terminal:
            raise ValueError(f"finalize requires a terminal status, got {status.value}")
        job = self.get(job_id)
        promotion = status == JobStatus.COMPLETED and job.status in (JobStatus.FAILED, JobStatus.CANCELLED)
        if job.status.is_terminal and not promotion:
            logger.warning("job_already_terminal", job_id=job_id, status=job.status.value, requested=status.value)
            return job

        timestamp = self._clock.now()
        values: dict[str, object] = {
            "status": status.value,
            "finished_at": timestamp,
            "failure_reason": reason,
            "cancel_requested": False,
        }
        if status == JobStatus.COMPLETED:
            values["estimated_completion_time"] = timestamp
        self._ops.execute_update(update(jobs_table).where(jobs_table.c.job_id == job_id).values(**values))
        logger.info(
            "job_finalized",
            job_id=job_id,
            status=status.value,
            previous=job.status.value,
            reason=reason,
        )
        return self.get(job_id)

    def request_cancel(self, job_id: str) -> Job:
        """Set the cooperative cancellation flag. The running engine honours it at its next checkpoint.

        Raises:
            JobNotFoundError: If no such job exists
        """
        job = self.get(job_id)
        if job.status.is_terminal:
            logger.warning("cancel_ignored_terminal_job", job_id=job_id, status=job.status.value)
            return job
        self._ops.execute_update(update(jobs_table).where(jobs_table.c.job_id == job_id).values(cancel_requested=True))
        logger.info("job_cancel_requested", job_id=job_id)
        return self.get(job_id)

    def is_cancel_requested(self, job_id: str) -> bool:
        return self.get(job_id).cancel_requested
