"""SQLAlchemy table definitions for the ledger.

Uses SQLAlchemy Core (not ORM) for explicit control over queries and
compatibility with SQLite and PostgreSQL. Every uniqueness rule the engine
relies on for idempotency is a database constraint, not application logic.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
)

# Shared metadata for all tables
metadata = MetaData()

# === Work Catalog ===

source_batches_table = Table(
    "source_batches",
    metadata,
    Column("batch_id", String(64), primary_key=True),
    # One logical source is tied to one checksum forever
    Column("source_name", String(512), nullable=False, unique=True),
    Column("source_path", Text, nullable=False),
    Column("checksum", String(64), nullable=False),
    Column("item_count", Integer, nullable=False),
    Column("duplicate_count", Integer, nullable=False, default=0),
    Column("loaded_at", DateTime(timezone=True), nullable=False),
)

work_items_table = Table(
    "work_items",
    metadata,
    Column("batch_id", String(64), ForeignKey("source_batches.batch_id"), nullable=False),
    Column("source_id", String(256), nullable=False),
    Column("item_type", String(64), nullable=False),
    Column("text", Text, nullable=False),
    Column("row_index", Integer, nullable=False),
    Column("attributes_json", Text),
    Column("loaded_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("batch_id", "source_id", "item_type"),
)

Index("ix_work_items_batch_type", work_items_table.c.batch_id, work_items_table.c.item_type)

# === Job Ledger ===

jobs_table = Table(
    "jobs",
    metadata,
    Column("job_id", String(64), primary_key=True),
    Column("name", String(256), nullable=False),
    Column("status", String(32), nullable=False),
    Column("batch_id", String(64), ForeignKey("source_batches.batch_id"), nullable=False),
    Column("config_json", Text, nullable=False),
    Column("config_hash", String(64), nullable=False),
    Column("canonical_version", String(64), nullable=False),
    Column("total_item_count", Integer, nullable=False),
    Column("completed_item_count", Integer, nullable=False, default=0),
    Column("error_item_count", Integer, nullable=False, default=0),
    Column("retry_pass", Integer, nullable=False, default=0),
    Column("cancel_requested", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("last_progress_update", DateTime(timezone=True)),
    Column("estimated_completion_time", DateTime(timezone=True)),
    # ETA baseline for the process currently working the job
    Column("session_started_at", DateTime(timezone=True)),
    Column("session_start_count", Integer, nullable=False, default=0),
    Column("finished_at", DateTime(timezone=True)),
    Column("failure_reason", Text),
    CheckConstraint("completed_item_count <= total_item_count", name="ck_jobs_completed_le_total"),
    CheckConstraint("completed_item_count >= 0", name="ck_jobs_completed_nonneg"),
)

Index("ix_jobs_batch", jobs_table.c.batch_id)
Index("ix_jobs_status", jobs_table.c.status)

# === Result Store ===

results_table = Table(
    "results",
    metadata,
    Column("result_id", String(64), primary_key=True),
    Column("job_id", String(64), ForeignKey("jobs.job_id"), nullable=False),
    Column("source_id", String(256), nullable=False),
    Column("item_type", String(64), nullable=False),
    Column("retry_pass", Integer, nullable=False, default=0),
    Column("is_error", Boolean, nullable=False),
    Column("outcome_json", Text),
    Column("confidence", Float),
    Column("error_kind", String(32)),
    Column("error_message", Text),
    Column("raw_response", Text),
    Column("model", String(128)),
    Column("prompt_tokens", Integer),
    Column("completion_tokens", Integer),
    Column("latency_ms", Float),
    Column("attempts", Integer, nullable=False, default=1),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
    # Idempotency: at most one result per item per job per retry pass
    UniqueConstraint("job_id", "source_id", "item_type", "retry_pass", name="uq_results_job_item_pass"),
    CheckConstraint("NOT is_error OR error_kind IS NOT NULL", name="ck_results_error_kind"),
)

Index("ix_results_job_key", results_table.c.job_id, results_table.c.source_id, results_table.c.item_type)

# === Lock Manager ===

resume_locks_table = Table(
    "resume_locks",
    metadata,
    Column("job_id", String(64), ForeignKey("jobs.job_id"), primary_key=True),
    Column("owner_pid", Integer, nullable=False),
    Column("owner_host", String(255), nullable=False),
    Column("owner_token", String(64), nullable=False, unique=True),
    Column("acquired_at", DateTime(timezone=True), nullable=False),
    Column("heartbeat_at", DateTime(timezone=True), nullable=False),
)
