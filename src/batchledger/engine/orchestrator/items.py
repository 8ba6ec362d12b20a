"""Per-item processing: one classifier call under retries, mapped to an ItemResult.

Every outcome a classifier can produce becomes a result, so an item never
stalls the job:

- ClassificationOutcome -> success
- ClassificationFailure -> MALFORMED_RESPONSE (not retried; the model answered)
- ClassificationOutcome whose payload has no canonical form -> MALFORMED_RESPONSE
- retryable ClassifierError, retries exhausted -> TRANSIENT
- non-retryable ClassifierError -> PERMANENT

Anything else (template errors, programming errors) propagates and fails the job.
"""

import time

from batchledger.classifier.protocol import Classifier, ClassifierError
from batchledger.contracts.classification import ClassificationFailure, ClassificationResult
from batchledger.contracts.enums import ErrorKind
from batchledger.contracts.records import WorkItem
from batchledger.contracts.results import ItemResult
from batchledger.core.canonical import canonical_json
from batchledger.core.logging import get_logger
from batchledger.engine.retry import MaxRetriesExceeded, RetryManager

logger = get_logger(__name__)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ClassifierError) and error.retryable


class ItemProcessor:
    """Classifies work items. Safe to call from worker threads: it never touches the ledger."""

    def __init__(self, classifier: Classifier, retry_manager: RetryManager, *, timeout: float) -> None:
        self._classifier = classifier
        self._retry = retry_manager
        self._timeout = timeout

    def process(self, item: WorkItem) -> ItemResult:
        attempts = 0
        context = {
            "source_id": item.source_id,
            "item_type": item.item_type,
            "row_index": item.row_index,
            "attributes": item.attributes,
        }

        def call() -> ClassificationResult:
            nonlocal attempts
            attempts += 1
            return self._classifier.classify(item.text, timeout=self._timeout, context=context)

        def on_retry(attempt: int, error: BaseException) -> None:
            logger.warning("classify_retry", key=str(item.key), attempt=attempt, error=str(error))

        started = time.perf_counter()
        try:
            answer = self._retry.execute_with_retry(call, is_retryable=_is_retryable, on_retry=on_retry)
        except MaxRetriesExceeded as e:
            logger.warning("classify_retries_exhausted", key=str(item.key), attempts=e.attempts, error=str(e.last_error))
            return ItemResult.from_error(ErrorKind.TRANSIENT, e.last_error, attempts=e.attempts, latency_ms=_elapsed_ms(started))
        except ClassifierError as e:
            logger.warning("classify_failed", key=str(item.key), error=str(e))
            return ItemResult.from_error(ErrorKind.PERMANENT, e, attempts=attempts, latency_ms=_elapsed_ms(started))

        latency_ms = _elapsed_ms(started)
        if isinstance(answer, ClassificationFailure):
            logger.info("classify_malformed_response", key=str(item.key), kind=answer.error_kind)
            return ItemResult.from_failure(answer, attempts=attempts, latency_ms=latency_ms)
        try:
            canonical_json(answer.payload)
        except (ValueError, TypeError, RecursionError) as e:
            logger.info("classify_unstorable_payload", key=str(item.key), error=str(e))
            unstorable = ClassificationFailure(
                error_kind="invalid_json",
                message=f"payload cannot be stored: {e}",
                raw_response=answer.raw_response,
                model=answer.model,
                usage=answer.usage,
                latency_ms=answer.latency_ms,
            )
            return ItemResult.from_failure(unstorable, attempts=attempts, latency_ms=latency_ms)
        return ItemResult.from_outcome(answer, attempts=attempts, latency_ms=latency_ms)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
