"""CLI helper functions for ledger resolution and engine construction."""

from pathlib import Path

from batchledger.cli_formatters import create_console_formatters, create_json_formatters, subscribe_formatters
from batchledger.core.config import JobSettings, LedgerSettings
from batchledger.core.events import EventBus
from batchledger.core.ledger import LedgerDB
from batchledger.engine import ExecutionEngine


def resolve_ledger_url(ledger: str | None, settings: JobSettings | None) -> str:
    """Pick the ledger URL: explicit --ledger, then the settings file, then the default."""
    if ledger:
        return ledger
    if settings is not None:
        return settings.ledger.url
    return LedgerSettings().url


def open_ledger(ledger: str | None, settings: JobSettings | None = None) -> LedgerDB:
    return LedgerDB.from_url(resolve_ledger_url(ledger, settings))


def build_engine(db: LedgerDB, *, output_format: str, prefix: str = "Run") -> ExecutionEngine:
    """Engine wired to console or JSON event formatters."""
    event_bus = EventBus()
    formatters = create_json_formatters() if output_format == "json" else create_console_formatters(prefix)
    subscribe_formatters(event_bus, formatters)
    return ExecutionEngine(db, event_bus=event_bus)


def describe_source(settings: JobSettings) -> list[str]:
    """Human-readable summary lines for validate."""
    source = settings.source
    columns = ", ".join(f"{item_type}={column}" for item_type, column in source.text_columns.items())
    lines = [
        f"Source:     {source.name} ({source.format.value}) at {Path(source.path)}",
        f"Id column:  {source.id_column}",
        f"Item types: {columns}",
        f"Model:      {settings.classifier.model}",
        f"Checkpoint: every {settings.checkpoint.interval} items",
        f"Ledger:     {settings.ledger.url}",
    ]
    if settings.scope.max_items is not None or settings.scope.item_types is not None:
        lines.append(f"Scope:      max_items={settings.scope.max_items} item_types={settings.scope.item_types}")
    return lines
