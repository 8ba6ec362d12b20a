"""Repository layer for ledger records.

Handles the seam between SQLAlchemy rows (strings, JSON text, naive SQLite
timestamps) and domain objects (strict enum types, dicts, UTC datetimes).
This is NOT a trust boundary - if the database has bad data, we crash.
"""

import json
from typing import Any

from sqlalchemy.engine import Row as SARow

from batchledger.contracts.enums import ErrorKind, JobStatus
from batchledger.contracts.records import Job, ResultRecord, ResumeLock, SourceBatch, WorkItem
from batchledger.core.ledger._helpers import as_utc


class SourceBatchRepository:
    """Repository for SourceBatch records."""

    def load(self, row: SARow[Any]) -> SourceBatch:
        return SourceBatch(
            batch_id=row.batch_id,
            source_name=row.source_name,
            source_path=row.source_path,
            checksum=row.checksum,
            item_count=row.item_count,
            duplicate_count=row.duplicate_count,
            loaded_at=as_utc(row.loaded_at),  # type: ignore[arg-type]
        )


class WorkItemRepository:
    """Repository for WorkItem records."""

    def load(self, row: SARow[Any]) -> WorkItem:
        return WorkItem(
            batch_id=row.batch_id,
            source_id=row.source_id,
            item_type=row.item_type,
            text=row.text,
            row_index=row.row_index,
            loaded_at=as_utc(row.loaded_at),  # type: ignore[arg-type]
            attributes=json.loads(row.attributes_json) if row.attributes_json is not None else {},
        )


class JobRepository:
    """Repository for Job records.

    Converts the status string to JobStatus. Crashes on invalid data.
    """

    def load(self, row: SARow[Any]) -> Job:
        return Job(
            job_id=row.job_id,
            name=row.name,
            status=JobStatus(row.status),
            batch_id=row.batch_id,
            config_json=row.config_json,
            config_hash=row.config_hash,
            total_item_count=row.total_item_count,
            completed_item_count=row.completed_item_count,
            error_item_count=row.error_item_count,
            retry_pass=row.retry_pass,
            cancel_requested=bool(row.cancel_requested),
            created_at=as_utc(row.created_at),  # type: ignore[arg-type]
            last_progress_update=as_utc(row.last_progress_update),
            estimated_completion_time=as_utc(row.estimated_completion_time),
            session_started_at=as_utc(row.session_started_at),
            session_start_count=row.session_start_count,
            finished_at=as_utc(row.finished_at),
            failure_reason=row.failure_reason,
        )


class ResultRepository:
    """Repository for ResultRecord records."""

    def load(self, row: SARow[Any]) -> ResultRecord:
        return ResultRecord(
            result_id=row.result_id,
            job_id=row.job_id,
            source_id=row.source_id,
            item_type=row.item_type,
            retry_pass=row.retry_pass,
            is_error=bool(row.is_error),
            recorded_at=as_utc(row.recorded_at),  # type: ignore[arg-type]
            outcome=json.loads(row.outcome_json) if row.outcome_json is not None else None,
            confidence=row.confidence,
            # Explicit is not None check - empty string should raise, not become None
            error_kind=ErrorKind(row.error_kind) if row.error_kind is not None else None,
            error_message=row.error_message,
            raw_response=row.raw_response,
            model=row.model,
            prompt_tokens=row.prompt_tokens,
            completion_tokens=row.completion_tokens,
            latency_ms=row.latency_ms,
            attempts=row.attempts,
        )


class ResumeLockRepository:
    """Repository for ResumeLock records."""

    def load(self, row: SARow[Any]) -> ResumeLock:
        return ResumeLock(
            job_id=row.job_id,
            owner_pid=row.owner_pid,
            owner_host=row.owner_host,
            owner_token=row.owner_token,
            acquired_at=as_utc(row.acquired_at),  # type: ignore[arg-type]
            heartbeat_at=as_utc(row.heartbeat_at),  # type: ignore[arg-type]
        )
