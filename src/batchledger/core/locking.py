"""Lock Manager: at most one live process per job.

The lock is a row in ``resume_locks`` keyed by job_id, so acquisition is a
single atomic insert that the database arbitrates. A conflicting row is
inspected rather than waited on:

- same host, owner PID alive: refuse immediately (LockContentionError)
- same host, owner PID dead: reclaim (delete by owner token) and retry once
- liveness unknown (another host, or a platform without a PID probe):
  reclaim only when the holder's heartbeat is older than
  ``stale_after_seconds``; otherwise refuse unless the operator forces it
"""

import os
import socket
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from batchledger.contracts.errors import LockContentionError, LockLostError
from batchledger.contracts.records import ResumeLock
from batchledger.core.clock import DEFAULT_CLOCK, Clock
from batchledger.core.ledger._database_ops import DatabaseOps
from batchledger.core.ledger._helpers import generate_id
from batchledger.core.ledger.database import LedgerDB
from batchledger.core.ledger.repositories import ResumeLockRepository
from batchledger.core.ledger.schema import resume_locks_table
from batchledger.core.logging import get_logger

logger = get_logger(__name__)


def pid_alive(pid: int) -> bool | None:
    """Probe whether a local process exists.

    Returns:
        True/False on POSIX, None where no probe is available.
    """
    if os.name != "posix":
        return None
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


class LockManager:
    """Acquire, heartbeat and release per-job locks.

    Args:
        db: Ledger database
        stale_after_seconds: Heartbeat age after which an unprobeable holder
            is considered dead
        clock: Time source for acquired_at/heartbeat_at
        pid: Identity recorded as owner (defaults to this process)
        host: Host recorded as owner (defaults to this host)
        liveness: PID probe; returns None when liveness cannot be determined
    """

    def __init__(
        self,
        db: LedgerDB,
        *,
        stale_after_seconds: float = 900.0,
        clock: Clock = DEFAULT_CLOCK,
        pid: int | None = None,
        host: str | None = None,
        liveness: Callable[[int], bool | None] = pid_alive,
    ) -> None:
        if stale_after_seconds <= 0:
            raise ValueError(f"stale_after_seconds must be > 0, got {stale_after_seconds}")
        self._db = db
        self._ops = DatabaseOps(db)
        self._repo = ResumeLockRepository()
        self._stale_after = stale_after_seconds
        self._clock = clock
        self._pid = pid if pid is not None else os.getpid()
        self._host = host if host is not None else socket.gethostname()
        self._liveness = liveness

    def get(self, job_id: str) -> ResumeLock | None:
        """Current holder of the job's lock, if any."""
        row = self._ops.execute_fetchone(select(resume_locks_table).where(resume_locks_table.c.job_id == job_id))
        return self._repo.load(row) if row is not None else None

    def acquire(self, job_id: str, *, force: bool = False) -> ResumeLock:
        """Take the job's lock or fail fast.

        Args:
            job_id: Job to lock (must exist)
            force: Reclaim a lock whose owner's liveness cannot be probed even
                if its heartbeat is fresh. Never overrides a live local owner.

        Raises:
            LockContentionError: If another live (or possibly live) process holds it
        """
        for _ in range(2):
            timestamp = self._clock.now()
            lock = ResumeLock(
                job_id=job_id,
                owner_pid=self._pid,
                owner_host=self._host,
                owner_token=generate_id(),
                acquired_at=timestamp,
                heartbeat_at=timestamp,
            )
            try:
                self._ops.execute_insert(
                    resume_locks_table.insert().values(
                        job_id=lock.job_id,
                        owner_pid=lock.owner_pid,
                        owner_host=lock.owner_host,
                        owner_token=lock.owner_token,
                        acquired_at=lock.acquired_at,
                        heartbeat_at=lock.heartbeat_at,
                    )
                )
            except IntegrityError:
                holder = self.get(job_id)
                if holder is None:
                    # Released between our insert and our read
                    continue
                reclaim, detail = self._assess(holder, force=force)
                if not reclaim:
                    logger.warning(
                        "lock_contention",
                        job_id=job_id,
                        owner_pid=holder.owner_pid,
                        owner_host=holder.owner_host,
                        detail=detail,
                    )
                    raise LockContentionError(job_id, holder.owner_pid, holder.owner_host, detail) from None
                self._delete(job_id, holder.owner_token)
                logger.warning(
                    "lock_reclaimed",
                    job_id=job_id,
                    previous_pid=holder.owner_pid,
                    previous_host=holder.owner_host,
                    detail=detail,
                )
                continue
            logger.info("lock_acquired", job_id=job_id, pid=self._pid, host=self._host)
            return lock

        holder = self.get(job_id)
        raise LockContentionError(
            job_id,
            holder.owner_pid if holder else -1,
            holder.owner_host if holder else "unknown",
            "lock changed hands during acquisition",
        )

    def _assess(self, holder: ResumeLock, *, force: bool) -> tuple[bool, str]:
        """Decide whether a conflicting lock may be reclaimed, and why."""
        if holder.owner_host == self._host:
            alive = self._liveness(holder.owner_pid)
            if alive is True:
                return False, "owner process is alive"
            if alive is False:
                return True, "owner process is gone"
        age = (self._clock.now() - holder.heartbeat_at).total_seconds()
        if age > self._stale_after:
            return True, f"heartbeat is {age:.0f}s old (lease {self._stale_after:.0f}s)"
        if force:
            return True, "reclaimed by operator override"
        return False, f"owner liveness unknown and heartbeat is only {age:.0f}s old"

    def _delete(self, job_id: str, owner_token: str) -> int:
        with self._db.connection() as conn:
            result = conn.execute(
                delete(resume_locks_table).where(
                    resume_locks_table.c.job_id == job_id,
                    resume_locks_table.c.owner_token == owner_token,
                )
            )
            return result.rowcount

    def release(self, lock: ResumeLock) -> bool:
        """Delete the lock row if it is still ours.

        Returns:
            True if a row was deleted; False if the lock had already been
            released or taken over.
        """
        released = self._delete(lock.job_id, lock.owner_token) > 0
        if released:
            logger.info("lock_released", job_id=lock.job_id)
        else:
            logger.warning("lock_already_gone", job_id=lock.job_id)
        return released

    def heartbeat(self, lock: ResumeLock) -> None:
        """Refresh heartbeat_at for a held lock.

        Raises:
            LockLostError: If the row is no longer owned by this token
        """
        with self._db.connection() as conn:
            result = conn.execute(
                update(resume_locks_table)
                .where(
                    resume_locks_table.c.job_id == lock.job_id,
                    resume_locks_table.c.owner_token == lock.owner_token,
                )
                .values(heartbeat_at=self._clock.now())
            )
            if result.rowcount == 0:
                raise LockLostError(lock.job_id, lock.owner_token)

    @contextmanager
    def hold(self, job_id: str, *, force: bool = False) -> Iterator[ResumeLock]:
        """Hold the job's lock for the duration of a block, releasing on every exit path."""
        lock = self.acquire(job_id, force=force)
        try:
            yield lock
        finally:
            self.release(lock)
