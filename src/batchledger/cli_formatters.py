"""CLI event formatter factories for job execution output.

Each factory returns a dict mapping event types to handler callables,
suitable for subscribing to an EventBus. Console formatters write
human-readable lines; JSON formatters write one object per line.
"""

import json
from collections.abc import Callable
from datetime import datetime

import typer

from batchledger.contracts.events import ProgressEvent, RunSummary
from batchledger.contracts.results import JobStatusReport
from batchledger.core.events import EventBusProtocol


def _eta(value: datetime | None) -> str:
    return value.isoformat(timespec="seconds") if value is not None else "unknown"


def create_console_formatters(prefix: str = "Run") -> dict[type, Callable[..., None]]:
    """Create console formatters for human-readable CLI output.

    Args:
        prefix: Label for the summary line (e.g. "Run" or "Resume").
    """

    def _format_progress(event: ProgressEvent) -> None:
        rate = event.processed_this_run / event.elapsed_seconds if event.elapsed_seconds > 0 else 0
        percent = 100.0 * event.completed / event.total if event.total else 100.0
        typer.echo(
            f"  Progress: {event.completed:,}/{event.total:,} ({percent:.1f}%) | "
            f"{rate:.1f} items/sec | "
            f"✗{event.errors:,} errors | "
            f"ETA {_eta(event.eta)}"
        )

    def _format_run_summary(event: RunSummary) -> None:
        symbols = {0: "✓", 2: "✗", 3: "⚠"}
        symbol = symbols.get(event.exit_code, "?")
        typer.echo(
            f"\n{symbol} {prefix} {event.status.value.upper()} ({event.mode.value}): "
            f"{event.processed:,} items processed | "
            f"✗{event.errors:,} errors | "
            f"{event.skipped:,} duplicates skipped | "
            f"{event.duration_seconds:.2f}s total"
        )

    return {
        ProgressEvent: _format_progress,
        RunSummary: _format_run_summary,
    }


def create_json_formatters() -> dict[type, Callable[..., None]]:
    """Create JSON formatters for structured CLI output."""

    def _format_progress_json(event: ProgressEvent) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "progress",
                    "job_id": event.job_id,
                    "completed": event.completed,
                    "total": event.total,
                    "errors": event.errors,
                    "processed_this_run": event.processed_this_run,
                    "eta": event.eta.isoformat() if event.eta else None,
                    "elapsed_seconds": event.elapsed_seconds,
                }
            )
        )

    def _format_run_summary_json(event: RunSummary) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "run_completed",
                    "job_id": event.job_id,
                    "status": event.status.value,
                    "mode": event.mode.value,
                    "processed": event.processed,
                    "skipped": event.skipped,
                    "errors": event.errors,
                    "duration_seconds": event.duration_seconds,
                    "exit_code": event.exit_code,
                }
            )
        )

    return {
        ProgressEvent: _format_progress_json,
        RunSummary: _format_run_summary_json,
    }


def subscribe_formatters(
    event_bus: EventBusProtocol,
    formatters: dict[type, Callable[..., None]],
) -> None:
    """Subscribe all formatters to the event bus."""
    for event_type, handler in formatters.items():
        event_bus.subscribe(event_type, handler)


def status_as_dict(report: JobStatusReport) -> dict[str, object]:
    """JSON-safe view of a status report."""
    return {
        "job_id": report.job_id,
        "name": report.name,
        "status": report.status.value,
        "completed": report.completed,
        "total": report.total,
        "percent_complete": round(report.percent_complete, 2),
        "errors": report.errors,
        "retry_pass": report.retry_pass,
        "cancel_requested": report.cancel_requested,
        "estimated_completion_time": report.estimated_completion_time.isoformat() if report.estimated_completion_time else None,
        "last_progress_update": report.last_progress_update.isoformat() if report.last_progress_update else None,
        "lock": (
            {
                "owner_pid": report.lock.owner_pid,
                "owner_host": report.lock.owner_host,
                "heartbeat_at": report.lock.heartbeat_at.isoformat(),
            }
            if report.lock
            else None
        ),
    }


def format_status(report: JobStatusReport) -> str:
    """Multi-line console rendering of a status report."""
    lines = [
        f"Job {report.job_id} ({report.name})",
        f"  Status:    {report.status.value}{' (cancel requested)' if report.cancel_requested else ''}",
        f"  Progress:  {report.completed:,}/{report.total:,} ({report.percent_complete:.1f}%)",
        f"  Errors:    {report.errors:,}",
        f"  Retry pass: {report.retry_pass}",
        f"  ETA:       {_eta(report.estimated_completion_time)}",
    ]
    if report.lock is not None:
        lines.append(
            f"  Locked by: pid {report.lock.owner_pid} on {report.lock.owner_host} "
            f"(heartbeat {report.lock.heartbeat_at.isoformat(timespec='seconds')})"
        )
    return "\n".join(lines)
