"""Exception hierarchy for batchledger.

Integrity and contention errors are fatal and raised before any item is
processed. Item-level failures are never exceptions at this level - they
become error-flagged results (see batchledger.classifier for the transport
errors that feed them).
"""


class BatchLedgerError(Exception):
    """Base class for all batchledger errors."""


# =============================================================================
# Integrity errors (fatal, pre-processing)
# =============================================================================


class LedgerIntegrityError(BatchLedgerError):
    """The durable state and the world disagree; processing must not start."""


class ChecksumMismatchError(LedgerIntegrityError):
    """Source bytes no longer match the checksum recorded at load time.

    Attributes:
        source_name: Logical source identity
        expected: Checksum recorded in the catalog
        actual: Checksum of the bytes read now
    """

    def __init__(self, source_name: str, expected: str, actual: str) -> None:
        self.source_name = source_name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Source '{source_name}' has changed since it was loaded "
            f"(recorded sha256 {expected[:12]}..., now {actual[:12]}...). "
            "Refusing to mix two versions of a dataset."
        )


class SourceReadError(LedgerIntegrityError):
    """The source file could not be read."""


class MalformedSourceError(LedgerIntegrityError):
    """The source file was read but does not have the configured shape."""


class JobNotResumableError(LedgerIntegrityError):
    """The job exists but its state forbids the requested resume."""


class ConfigSnapshotError(LedgerIntegrityError):
    """The frozen config stored with a job no longer validates."""


# =============================================================================
# Contention and lookup errors
# =============================================================================


class LockContentionError(BatchLedgerError):
    """Another live process already holds the job's lock.

    Attributes:
        job_id: Job whose lock is held
        owner_pid: PID recorded by the holder
        owner_host: Hostname recorded by the holder
    """

    def __init__(self, job_id: str, owner_pid: int, owner_host: str, detail: str) -> None:
        self.job_id = job_id
        self.owner_pid = owner_pid
        self.owner_host = owner_host
        super().__init__(f"Job {job_id} is already running (pid {owner_pid} on {owner_host}): {detail}")


class JobNotFoundError(BatchLedgerError):
    """No job with the given id exists in the ledger."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


# =============================================================================
# Infrastructure errors (job transitions to FAILED)
# =============================================================================


class CheckpointError(BatchLedgerError):
    """A checkpoint could not be committed after repeated attempts."""

    def __init__(self, job_id: str, attempts: int, last_error: BaseException) -> None:
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Checkpoint for job {job_id} failed after {attempts} attempts: {last_error}")


class IllegalStateTransition(BatchLedgerError):
    """The execution engine was asked to move between unconnected states."""


class LockLostError(BatchLedgerError):
    """This process's lock row was removed or taken over while it was running.

    Another process now owns the job, so this one must stop without
    touching the job's status.
    """

    def __init__(self, job_id: str, owner_token: str) -> None:
        self.job_id = job_id
        self.owner_token = owner_token
        super().__init__(f"Lock for job {job_id} is no longer held by this process")
