"""ExecutionEngine: drives one job from validation to a terminal state.

The engine owns the run lifecycle:
1. Validate (zero side effects on resume): job, frozen config, source checksum
2. Acquire the job's lock
3. Select remaining work from the ledger (never from memory)
4. Classify items, buffering results
5. Checkpoint every ``checkpoint.interval`` items: flush results, derive
   progress from the result store, heartbeat the lock, honour cancellation
6. Finalize the job and release the lock

A crash at any point loses at most the unflushed buffer. Re-running the
same job recomputes remaining work from the catalog and the result store,
and duplicate writes are absorbed by the store.
"""

import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack, contextmanager
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from batchledger.classifier.llm import build_classifier
from batchledger.classifier.protocol import ClassifierFactory
from batchledger.contracts.enums import EngineState, JobStatus, ResultFilter, RunMode
from batchledger.contracts.errors import (
    CheckpointError,
    JobNotResumableError,
    LedgerIntegrityError,
    LockLostError,
)
from batchledger.contracts.events import ProgressEvent, RunSummary
from batchledger.contracts.records import Job, WorkItem
from batchledger.contracts.results import JobStatusReport, LoadResult, RunResult
from batchledger.core.clock import DEFAULT_CLOCK, Clock
from batchledger.core.config import JobSettings, settings_from_snapshot
from batchledger.core.events import EventBusProtocol, NullEventBus
from batchledger.core.ledger import JobLedger, LedgerDB, ResultStore, WorkCatalog
from batchledger.core.locking import LockManager, pid_alive
from batchledger.core.logging import get_logger
from batchledger.engine.orchestrator.items import ItemProcessor
from batchledger.engine.orchestrator.state import EngineStateMachine
from batchledger.engine.orchestrator.types import RunContext, StopReason
from batchledger.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from batchledger.sources.loader import SourceLoader

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 2
EXIT_INTERRUPTED = 3


class ExecutionEngine:
    """Runs and resumes classification jobs against a ledger.

    Example:
        db = LedgerDB.from_url(settings.ledger.url)
        engine = ExecutionEngine(db)
        result = engine.start(settings)
        ...
        result = engine.resume(result.job_id)  # after a crash

    Args:
        db: Ledger database
        classifier_factory: Builds a classifier from the job's classifier settings
        clock: Time source for the ledger and for ETA/elapsed reporting
        event_bus: Receives StateChanged, ProgressEvent and RunSummary
        sleep: Used for retry backoff (tests pass a no-op)
        pid, host, liveness: Lock owner identity and liveness probe
    """

    def __init__(
        self,
        db: LedgerDB,
        *,
        classifier_factory: ClassifierFactory = build_classifier,
        clock: Clock = DEFAULT_CLOCK,
        event_bus: EventBusProtocol | None = None,
        sleep: Callable[[float], None] = time.sleep,
        pid: int | None = None,
        host: str | None = None,
        liveness: Callable[[int], bool | None] = pid_alive,
    ) -> None:
        self._db = db
        self._classifier_factory = classifier_factory
        self._clock = clock
        self._events: EventBusProtocol = event_bus or NullEventBus()
        self._sleep = sleep
        self._pid = pid
        self._host = host
        self._liveness = liveness

        self._catalog = WorkCatalog(db)
        self._jobs = JobLedger(db, clock=clock)
        self._loader = SourceLoader(db, clock=clock)
        self._machine = EngineStateMachine(self._events)

    @property
    def state(self) -> EngineState:
        """State of the most recent run."""
        return self._machine.state

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def load(self, settings: JobSettings) -> LoadResult:
        """Catalog the configured source without creating a job."""
        return self._loader.load(settings.source)

    def start(self, settings: JobSettings, *, shutdown_event: threading.Event | None = None) -> RunResult:
        """Load the source (idempotent), create a job over its scope and run it.

        Raises:
            LedgerIntegrityError: If the source cannot be loaded or has changed
            CheckpointError: If progress could not be made durable
        """
        machine = self._new_run()
        machine.to(EngineState.VALIDATING)
        processor = self._build_processor(settings)
        loaded = self._loader.load(settings.source)
        total = self._catalog.count_scope(loaded.batch.batch_id, settings.scope)
        job_id = self._jobs.start(settings, loaded.batch.batch_id, total)
        ctx = RunContext(job=self._jobs.get(job_id), settings=settings, batch=loaded.batch, mode=RunMode.NORMAL)
        return self._run(machine, ctx, processor, force_unlock=False, shutdown_event=shutdown_event)

    def resume(
        self,
        job_id: str,
        *,
        retry_errors: bool = False,
        force_unlock: bool = False,
        shutdown_event: threading.Event | None = None,
    ) -> RunResult:
        """Continue a job from the ledger's state.

        Validation happens before anything is written: the job must exist,
        its frozen config must still validate, and the source file must hash
        to the checksum recorded at load.

        Args:
            job_id: Job to resume
            retry_errors: Reprocess only items whose current result is an
                error, under a new retry pass. Allowed on completed jobs.
            force_unlock: Take over a lock whose holder's liveness cannot be
                determined. Never overrides a live local process.

        Raises:
            JobNotFoundError: If the job does not exist
            ConfigSnapshotError: If the frozen config no longer validates
            ChecksumMismatchError: If the source file changed
            LockContentionError: If another process is running the job
        """
        machine = self._new_run()
        machine.job_id = job_id
        machine.to(EngineState.VALIDATING)

        job = self._jobs.get(job_id)
        if job.status == JobStatus.COMPLETED and not retry_errors:
            return self._noop(
                machine,
                job,
                f"Job {job_id} is already completed ({job.completed_item_count}/{job.total_item_count} items); nothing to resume",
            )

        settings = settings_from_snapshot(job.config_json, job.config_hash)
        batch = self._catalog.get_batch(job.batch_id)
        if batch is None:
            raise JobNotResumableError(f"Job {job_id} references batch {job.batch_id}, which is not in the catalog")
        self._loader.verify(batch, settings.source.path)

        if retry_errors and ResultStore(self._db).count_errors(job_id) == 0:
            return self._noop(machine, job, f"Job {job_id} has no error-flagged results to retry")

        processor = self._build_processor(settings)
        mode = RunMode.RETRY_ERRORS if retry_errors else RunMode.NORMAL
        ctx = RunContext(job=job, settings=settings, batch=batch, mode=mode)
        return self._run(machine, ctx, processor, force_unlock=force_unlock, shutdown_event=shutdown_event)

    def status(self, job_id: str) -> JobStatusReport:
        """Operator snapshot: counts from the result store, ETA from the ledger, current lock holder."""
        job = self._jobs.get(job_id)
        results = ResultStore(self._db)
        return JobStatusReport(
            job_id=job.job_id,
            name=job.name,
            status=job.status,
            completed=results.count_completed(job_id),
            total=job.total_item_count,
            errors=results.count_errors(job_id),
            retry_pass=job.retry_pass,
            cancel_requested=job.cancel_requested,
            estimated_completion_time=job.estimated_completion_time,
            last_progress_update=job.last_progress_update,
            lock=LockManager(self._db, clock=self._clock).get(job_id),
        )

    def cancel(self, job_id: str) -> Job:
        """Request cooperative cancellation; the running process stops at its next checkpoint."""
        return self._jobs.request_cancel(job_id)

    def list_jobs(self, *, status: JobStatus | None = None) -> list[Job]:
        return self._jobs.list_jobs(status=status)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _new_run(self) -> EngineStateMachine:
        self._machine = EngineStateMachine(self._events)
        return self._machine

    def _build_processor(self, settings: JobSettings) -> ItemProcessor:
        classifier = self._classifier_factory(settings.classifier)
        retry = RetryManager(RetryConfig.from_settings(settings.retry), sleep=self._sleep)
        return ItemProcessor(classifier, retry, timeout=settings.classifier.timeout_seconds)

    def _lock_manager(self, settings: JobSettings) -> LockManager:
        return LockManager(
            self._db,
            stale_after_seconds=settings.lock.stale_after_seconds,
            clock=self._clock,
            pid=self._pid,
            host=self._host,
            liveness=self._liveness,
        )

    def _noop(self, machine: EngineStateMachine, job: Job, message: str) -> RunResult:
        machine.to(EngineState.DONE)
        logger.info("resume_noop", job_id=job.job_id, status=job.status.value, message=message)
        return RunResult(
            job_id=job.job_id,
            status=job.status,
            total=job.total_item_count,
            completed=job.completed_item_count,
            retry_pass=job.retry_pass,
            message=message,
        )

    @contextmanager
    def _shutdown_handler_context(self) -> Iterator[threading.Event]:
        """Install SIGINT/SIGTERM handlers that set a shutdown event.

        On first signal: sets the event and restores the default SIGINT
        handler, so a second Ctrl-C raises KeyboardInterrupt immediately.
        Off the main thread no handlers are installed; the event is still
        returned but only a caller can set it.
        """
        shutdown_event = threading.Event()

        if threading.current_thread() is not threading.main_thread():
            yield shutdown_event
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, frame: Any) -> None:
            shutdown_event.set()
            signal.signal(signal.SIGINT, signal.default_int_handler)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield shutdown_event
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _run(
        self,
        machine: EngineStateMachine,
        ctx: RunContext,
        processor: ItemProcessor,
        *,
        force_unlock: bool,
        shutdown_event: threading.Event | None,
    ) -> RunResult:
        machine.job_id = ctx.job_id
        locks = self._lock_manager(ctx.settings)
        ctx.lock = locks.acquire(ctx.job_id, force=force_unlock)
        machine.to(EngineState.LOCKED)

        with structlog.contextvars.bound_contextvars(job_id=ctx.job_id):
            try:
                return self._execute(machine, ctx, processor, locks, shutdown_event)
            except LockLostError:
                # Another process owns the job now; its status is not ours to touch
                machine.fail()
                logger.error("lock_lost", owner_token=ctx.lock.owner_token)
                raise
            except Exception as e:
                machine.fail()
                self._fail_job(ctx, e)
                self._summarize(ctx, JobStatus.FAILED, EXIT_FAILED)
                raise
            except BaseException:
                # KeyboardInterrupt/SystemExit: leave the job resumable as-is
                machine.fail()
                logger.warning("run_aborted", completed_this_run=ctx.counters.processed)
                raise
            finally:
                try:
                    locks.release(ctx.lock)
                except SQLAlchemyError as e:
                    logger.error("lock_release_failed", error=str(e))

    def _execute(
        self,
        machine: EngineStateMachine,
        ctx: RunContext,
        processor: ItemProcessor,
        locks: LockManager,
        shutdown_event: threading.Event | None,
    ) -> RunResult:
        results = ResultStore(self._db, clock=self._clock)
        previous = self._jobs.get(ctx.job_id)
        ctx.resumed_from, ctx.resumed_reason = previous.status, previous.failure_reason
        job = self._jobs.begin_session(
            ctx.job_id,
            results.count_completed(ctx.job_id),
            bump_retry_pass=ctx.mode == RunMode.RETRY_ERRORS,
        )
        ctx.job = job
        ctx.retry_pass = job.retry_pass if ctx.mode == RunMode.RETRY_ERRORS else 0
        ctx.started_monotonic = self._clock.monotonic()

        items = self._select_work(ctx, results)
        logger.info(
            "run_started",
            mode=ctx.mode.value,
            remaining=len(items),
            total=job.total_item_count,
            retry_pass=ctx.retry_pass,
            max_workers=ctx.settings.concurrency.max_workers,
        )

        with ExitStack() as stack:
            event = shutdown_event if shutdown_event is not None else stack.enter_context(self._shutdown_handler_context())
            executor: ThreadPoolExecutor | None = None
            if ctx.settings.concurrency.max_workers > 1:
                executor = stack.enter_context(
                    ThreadPoolExecutor(
                        max_workers=ctx.settings.concurrency.max_workers,
                        thread_name_prefix="batchledger-classify",
                    )
                )
            machine.to(EngineState.PROCESSING)
            reason = self._process(machine, ctx, items, processor, results, locks, event, executor)

        machine.to(EngineState.FINALIZING)
        status, exit_code = self._finalize(ctx, reason, results)
        machine.to(EngineState.DONE)
        self._summarize(ctx, status, exit_code)

        final = self._jobs.get(ctx.job_id)
        return RunResult(
            job_id=ctx.job_id,
            status=final.status,
            total=final.total_item_count,
            completed=results.count_completed(ctx.job_id),
            processed=ctx.counters.processed,
            skipped=ctx.counters.skipped,
            errors=ctx.counters.errors,
            retry_pass=ctx.retry_pass,
            cancelled=reason == StopReason.CANCELLED,
            interrupted=reason == StopReason.INTERRUPTED,
        )

    def _select_work(self, ctx: RunContext, results: ResultStore) -> list[WorkItem]:
        """Remaining items, derived from the ledger.

        Normal mode: in-scope items with no result. Retry-errors mode: items
        whose current result is error-flagged.
        """
        if ctx.mode == RunMode.RETRY_ERRORS:
            failed = results.query(ctx.job_id, status=ResultFilter.ERROR)
            return self._catalog.get_items(ctx.batch.batch_id, [record.key for record in failed])
        return self._catalog.remaining(ctx.job_id, ctx.batch.batch_id, ctx.settings.scope)

    def _process(
        self,
        machine: EngineStateMachine,
        ctx: RunContext,
        items: list[WorkItem],
        processor: ItemProcessor,
        results: ResultStore,
        locks: LockManager,
        shutdown_event: threading.Event,
        executor: ThreadPoolExecutor | None,
    ) -> StopReason:
        interval = ctx.settings.checkpoint.interval
        for start in range(0, len(items), interval):
            if shutdown_event.is_set():
                return StopReason.INTERRUPTED
            window = items[start : start + interval]
            if executor is not None:
                # Order preserved; writes stay on this thread
                futures = [executor.submit(processor.process, item) for item in window]
                try:
                    for item, future in zip(window, futures, strict=True):
                        ctx.buffer.append((item.key, future.result()))
                        if shutdown_event.is_set():
                            break
                finally:
                    # Calls already running finish but their results are dropped; those items stay remaining
                    for future in futures:
                        future.cancel()
            else:
                for item in window:
                    ctx.buffer.append((item.key, processor.process(item)))
                    if shutdown_event.is_set():
                        break

            machine.to(EngineState.CHECKPOINTING)
            cancel_requested = self._checkpoint(ctx, results, locks)
            machine.to(EngineState.PROCESSING)
            if cancel_requested:
                logger.info("run_cancel_observed", completed_this_run=ctx.counters.processed)
                return StopReason.CANCELLED
            if shutdown_event.is_set():
                logger.info("run_shutdown_requested", completed_this_run=ctx.counters.processed)
                return StopReason.INTERRUPTED
        return StopReason.EXHAUSTED

    def _checkpoint(self, ctx: RunContext, results: ResultStore, locks: LockManager) -> bool:
        """Make progress durable. Returns True when cancellation was requested.

        Raises:
            CheckpointError: If the database kept failing for checkpoint.max_attempts tries
            LockLostError: If the lock row no longer belongs to this run
        """
        assert ctx.lock is not None
        lock = ctx.lock

        def commit() -> Job:
            if ctx.buffer:
                outcomes = results.append_many(ctx.job_id, ctx.buffer, retry_pass=ctx.retry_pass)
                ctx.counters.record(ctx.buffer, outcomes)
                ctx.buffer.clear()
            job = self._jobs.update_progress(
                ctx.job_id,
                results.count_completed(ctx.job_id),
                error_count=results.count_errors(ctx.job_id),
            )
            locks.heartbeat(lock)
            return job

        def on_retry(attempt: int, error: BaseException) -> None:
            logger.warning("checkpoint_retry", attempt=attempt, error=str(error))

        cp = ctx.settings.checkpoint
        retry = RetryManager(
            RetryConfig(max_attempts=cp.max_attempts, base_delay=cp.retry_delay_seconds, jitter=0.0),
            sleep=self._sleep,
        )
        try:
            job = retry.execute_with_retry(commit, is_retryable=lambda e: isinstance(e, SQLAlchemyError), on_retry=on_retry)
        except MaxRetriesExceeded as e:
            raise CheckpointError(ctx.job_id, e.attempts, e.last_error) from e

        ctx.job = job
        elapsed = self._clock.monotonic() - (ctx.started_monotonic or 0.0)
        logger.info(
            "checkpoint",
            completed=job.completed_item_count,
            total=job.total_item_count,
            errors=job.error_item_count,
            processed_this_run=ctx.counters.processed,
        )
        self._events.emit(
            ProgressEvent(
                job_id=ctx.job_id,
                completed=job.completed_item_count,
                total=job.total_item_count,
                errors=job.error_item_count,
                processed_this_run=ctx.counters.processed,
                eta=job.estimated_completion_time,
                elapsed_seconds=elapsed,
            )
        )
        return job.cancel_requested

    def _finalize(self, ctx: RunContext, reason: StopReason, results: ResultStore) -> tuple[JobStatus, int]:
        """Apply the loop's outcome to the job. Returns (job status, exit code)."""
        if reason == StopReason.INTERRUPTED:
            logger.warning("run_interrupted", completed_this_run=ctx.counters.processed)
            return self._jobs.get(ctx.job_id).status, EXIT_INTERRUPTED
        if reason == StopReason.CANCELLED:
            job = self._jobs.finalize(ctx.job_id, JobStatus.CANCELLED, reason="cancelled by operator")
            return job.status, EXIT_INTERRUPTED

        completed = results.count_completed(ctx.job_id)
        job = self._jobs.get(ctx.job_id)
        if completed == job.total_item_count:
            if job.status != JobStatus.COMPLETED:
                job = self._jobs.finalize(ctx.job_id, JobStatus.COMPLETED)
            return job.status, EXIT_OK
        if ctx.mode == RunMode.RETRY_ERRORS:
            # A retry pass over a job whose normal pass is unfinished
            logger.info("retry_pass_finished", completed=completed, total=job.total_item_count)
            if ctx.resumed_from in (JobStatus.FAILED, JobStatus.CANCELLED):
                job = self._jobs.finalize(ctx.job_id, ctx.resumed_from, reason=ctx.resumed_reason)
            return job.status, EXIT_OK
        raise LedgerIntegrityError(
            f"Job {ctx.job_id} exhausted its remaining work with {completed}/{job.total_item_count} items recorded"
        )

    def _fail_job(self, ctx: RunContext, error: Exception) -> None:
        """Best-effort finalize(failed); the original error is what the caller sees."""
        logger.error("run_failed", error=f"{type(error).__name__}: {error}", completed_this_run=ctx.counters.processed)
        try:
            self._jobs.finalize(ctx.job_id, JobStatus.FAILED, reason=f"{type(error).__name__}: {error}")
        except SQLAlchemyError as finalize_error:
            logger.error("job_finalize_failed", error=str(finalize_error))

    def _summarize(self, ctx: RunContext, status: JobStatus, exit_code: int) -> None:
        duration = self._clock.monotonic() - ctx.started_monotonic if ctx.started_monotonic is not None else 0.0
        self._events.emit(
            RunSummary(
                job_id=ctx.job_id,
                status=status,
                mode=ctx.mode,
                processed=ctx.counters.processed,
                skipped=ctx.counters.skipped,
                errors=ctx.counters.errors,
                duration_seconds=duration,
                exit_code=exit_code,
            )
        )
        logger.info(
            "run_finished",
            status=status.value,
            mode=ctx.mode.value,
            processed=ctx.counters.processed,
            skipped=ctx.counters.skipped,
            errors=ctx.counters.errors,
            duration_seconds=round(duration, 3),
            exit_code=exit_code,
        )
