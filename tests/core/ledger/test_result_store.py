"""Tests for the Result Store: insert-or-skip writes and current-result queries."""

from pathlib import Path

import pytest

from batchledger.contracts.enums import AppendOutcome, ErrorKind, ResultFilter
from batchledger.contracts.records import ItemKey
from batchledger.contracts.results import ItemResult
from batchledger.core.clock import MockClock
from batchledger.core.ledger import JobLedger, LedgerDB, ResultStore
from tests.fixtures.ledger import catalog_batch
from tests.fixtures.sources import make_settings

KEY = ItemKey("id-0000", "cme")


def success(detected: bool = True, confidence: float | None = 0.8) -> ItemResult:
    return ItemResult(
        is_error=False,
        outcome={"detected": detected, "confidence": confidence},
        confidence=confidence,
        raw_response='{"detected": true}',
        model="fake-model",
        prompt_tokens=10,
        completion_tokens=3,
        latency_ms=12.5,
    )


def failure(kind: ErrorKind = ErrorKind.TRANSIENT, attempts: int = 3) -> ItemResult:
    return ItemResult(is_error=True, error_kind=kind, error_message="RateLimitError: slow down", attempts=attempts)


@pytest.fixture
def job_id(ledger_db: LedgerDB, mock_clock: MockClock) -> str:
    batch = catalog_batch(ledger_db, 5, clock=mock_clock)
    return JobLedger(ledger_db, clock=mock_clock).start(make_settings(Path("/data/incidents.csv")), batch.batch_id, 10)


@pytest.fixture
def store(ledger_db: LedgerDB, mock_clock: MockClock) -> ResultStore:
    return ResultStore(ledger_db, clock=mock_clock)


class TestAppend:
    def test_success_round_trip(self, store: ResultStore, job_id: str, mock_clock: MockClock) -> None:
        assert store.append(job_id, KEY, success()) == AppendOutcome.INSERTED

        record = store.get(job_id, KEY)
        assert record is not None
        assert record.is_error is False
        assert record.outcome == {"detected": True, "confidence": 0.8}
        assert record.confidence == 0.8
        assert record.prompt_tokens == 10
        assert record.latency_ms == 12.5
        assert record.retry_pass == 0
        assert record.recorded_at == mock_clock.now()

    def test_error_round_trip(self, store: ResultStore, job_id: str) -> None:
        store.append(job_id, KEY, failure(ErrorKind.PERMANENT, attempts=1))

        record = store.get(job_id, KEY)
        assert record is not None
        assert record.is_error is True
        assert record.error_kind == ErrorKind.PERMANENT
        assert record.outcome is None
        assert record.attempts == 1

    def test_duplicate_is_skipped_not_raised(self, store: ResultStore, job_id: str) -> None:
        store.append(job_id, KEY, success(detected=True))

        assert store.append(job_id, KEY, success(detected=False)) == AppendOutcome.DUPLICATE

        # First write wins
        record = store.get(job_id, KEY)
        assert record is not None
        assert record.outcome == {"detected": True, "confidence": 0.8}
        assert store.skipped == 1
        assert store.count_records(job_id) == 1

    def test_same_key_new_pass_is_inserted(self, store: ResultStore, job_id: str) -> None:
        store.append(job_id, KEY, failure())

        assert store.append(job_id, KEY, success(), retry_pass=1) == AppendOutcome.INSERTED
        assert store.count_records(job_id) == 2


class TestAppendMany:
    def test_mixed_new_and_duplicate(self, store: ResultStore, job_id: str) -> None:
        store.append(job_id, KEY, success())
        pending = [
            (KEY, success()),
            (ItemKey("id-0000", "le"), success()),
            (ItemKey("id-0001", "cme"), failure()),
        ]

        outcomes = store.append_many(job_id, pending)

        assert outcomes == [AppendOutcome.DUPLICATE, AppendOutcome.INSERTED, AppendOutcome.INSERTED]
        assert store.count_completed(job_id) == 3
        assert store.skipped == 1

    def test_replaying_a_buffer_is_idempotent(self, store: ResultStore, job_id: str) -> None:
        pending = [(ItemKey(f"id-{i:04d}", "cme"), success()) for i in range(5)]
        store.append_many(job_id, pending)

        outcomes = store.append_many(job_id, pending)

        assert set(outcomes) == {AppendOutcome.DUPLICATE}
        assert store.count_records(job_id) == 5

    def test_empty_buffer(self, store: ResultStore, job_id: str) -> None:
        assert store.append_many(job_id, []) == []


class TestCurrentResults:
    def test_counts_use_highest_pass(self, store: ResultStore, job_id: str) -> None:
        store.append_many(
            job_id,
            [
                (ItemKey("id-0000", "cme"), failure()),
                (ItemKey("id-0001", "cme"), failure()),
                (ItemKey("id-0002", "cme"), success()),
            ],
        )
        store.append(job_id, ItemKey("id-0000", "cme"), success(), retry_pass=1)

        assert store.count_completed(job_id) == 3
        assert store.count_errors(job_id) == 1
        assert store.count_records(job_id) == 4

    def test_query_error_filter_selects_current_errors(self, store: ResultStore, job_id: str) -> None:
        store.append_many(
            job_id,
            [(ItemKey("id-0001", "le"), failure()), (ItemKey("id-0000", "cme"), failure()), (ItemKey("id-0002", "cme"), success())],
        )
        store.append(job_id, ItemKey("id-0001", "le"), success(), retry_pass=1)

        errors = store.query(job_id, status=ResultFilter.ERROR)

        assert [record.key for record in errors] == [ItemKey("id-0000", "cme")]

    def test_query_all_in_key_order(self, store: ResultStore, job_id: str) -> None:
        keys = [ItemKey("id-0003", "le"), ItemKey("id-0000", "le"), ItemKey("id-0000", "cme")]
        store.append_many(job_id, [(key, success()) for key in keys])

        assert [record.key for record in store.query(job_id)] == sorted(keys)
        assert len(store.query(job_id, status=ResultFilter.SUCCESS)) == 3

    def test_get_returns_current_pass(self, store: ResultStore, job_id: str) -> None:
        store.append(job_id, KEY, failure())
        store.append(job_id, KEY, failure(ErrorKind.MALFORMED_RESPONSE), retry_pass=1)

        record = store.get(job_id, KEY)
        assert record is not None
        assert record.retry_pass == 1
        assert record.error_kind == ErrorKind.MALFORMED_RESPONSE

    def test_get_missing(self, store: ResultStore, job_id: str) -> None:
        assert store.get(job_id, ItemKey("nope", "cme")) is None

    def test_jobs_are_isolated(self, ledger_db: LedgerDB, mock_clock: MockClock, store: ResultStore, job_id: str) -> None:
        batch_id = JobLedger(ledger_db, clock=mock_clock).get(job_id).batch_id
        other = JobLedger(ledger_db, clock=mock_clock).start(make_settings(Path("/data/incidents.csv")), batch_id, 10)
        store.append(job_id, KEY, failure())

        assert store.count_completed(other) == 0
        assert store.count_errors(other) == 0
        assert store.append(other, KEY, success()) == AppendOutcome.INSERTED
