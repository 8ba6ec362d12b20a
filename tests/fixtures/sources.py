"""Source files, settings builders and engine construction for tests."""

import csv
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from batchledger.core.clock import MockClock
from batchledger.core.config import (
    CheckpointSettings,
    ClassifierSettings,
    JobSettings,
    RetrySettings,
    ScopeSettings,
    SourceSettings,
)
from batchledger.core.events import EventBusProtocol
from batchledger.core.ledger import LedgerDB
from batchledger.engine import ExecutionEngine
from tests.fixtures.classifiers import ScriptedClassifier

ID_COLUMN = "IncidentID"
TEXT_COLUMNS = {"cme": "NarrativeCME", "le": "NarrativeLE"}


def item_text(i: int, item_type: str) -> str:
    return f"narrative {i} {item_type}"


def write_csv(path: Path, rows: Sequence[dict[str, Any]], columns: Sequence[str] | None = None) -> Path:
    columns = list(columns) if columns is not None else list(rows[0]) if rows else [ID_COLUMN, *TEXT_COLUMNS.values()]
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=columns)
        writer.writeheader()
        writer.writerows(rows)
    return path


def wide_rows(n_ids: int, item_types: Sequence[str] = ("cme", "le")) -> list[dict[str, Any]]:
    """Rows with ids id-0000.. and one narrative column per item type."""
    rows = []
    for i in range(n_ids):
        row: dict[str, Any] = {ID_COLUMN: f"id-{i:04d}"}
        for item_type in item_types:
            row[TEXT_COLUMNS[item_type]] = item_text(i, item_type)
        rows.append(row)
    return rows


def make_settings(
    source_path: Path,
    *,
    item_types: Sequence[str] = ("cme", "le"),
    interval: int = 50,
    max_attempts: int = 3,
    max_items: int | None = None,
    scope_types: list[str] | None = None,
    **overrides: Any,
) -> JobSettings:
    """JobSettings over a test CSV with fast retries."""
    values: dict[str, Any] = {
        "name": "test-job",
        "source": SourceSettings(
            path=str(source_path),
            id_column=ID_COLUMN,
            text_columns={item_type: TEXT_COLUMNS[item_type] for item_type in item_types},
        ),
        "classifier": ClassifierSettings(model="fake-model", timeout_seconds=5.0),
        "checkpoint": CheckpointSettings(interval=interval, max_attempts=3, retry_delay_seconds=0.0),
        "retry": RetrySettings(max_attempts=max_attempts, initial_delay_seconds=0.01, max_delay_seconds=0.01, jitter_seconds=0.0),
        "scope": ScopeSettings(max_items=max_items, item_types=scope_types),
    }
    values.update(overrides)
    return JobSettings(**values)


@pytest.fixture
def source_csv(tmp_path: Path) -> Callable[..., Path]:
    """Write a wide CSV of n_ids rows and return its path."""

    def _write(n_ids: int, item_types: Sequence[str] = ("cme", "le"), name: str = "incidents.csv") -> Path:
        columns = [ID_COLUMN, *(TEXT_COLUMNS[t] for t in item_types)]
        return write_csv(tmp_path / name, wide_rows(n_ids, item_types), columns)

    return _write


@pytest.fixture
def make_engine(ledger_db: LedgerDB, mock_clock: MockClock) -> Callable[..., ExecutionEngine]:
    """Build engines sharing the test's ledger and clock, with no backoff sleeps."""

    def _make(
        classifier: ScriptedClassifier,
        *,
        event_bus: EventBusProtocol | None = None,
        **kwargs: Any,
    ) -> ExecutionEngine:
        return ExecutionEngine(
            ledger_db,
            classifier_factory=classifier.factory(),
            clock=mock_clock,
            event_bus=event_bus,
            sleep=lambda _: None,
            **kwargs,
        )

    return _make
