"""Fake classifiers for engine tests.

ScriptedClassifier answers from a per-text script and records every call.
A script entry is a result, an exception to raise, or a list of those
consumed one per call (the last entry repeats).
"""

import threading
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from batchledger.contracts.classification import ClassificationFailure, ClassificationOutcome, ClassificationResult
from batchledger.core.config import ClassifierSettings

ScriptEntry = ClassificationResult | Exception
Script = Mapping[str, ScriptEntry | list[ScriptEntry]]


class SimulatedCrash(BaseException):
    """Stands in for the process dying (not an Exception, so nothing handles it)."""


def outcome(detected: bool = True, confidence: float | None = 0.9) -> ClassificationOutcome:
    payload: dict[str, Any] = {"detected": detected}
    if confidence is not None:
        payload["confidence"] = confidence
    return ClassificationOutcome(
        payload=payload,
        confidence=confidence,
        raw_response=f'{{"detected": {str(detected).lower()}}}',
        model="fake-model",
        usage={"prompt_tokens": 12, "completion_tokens": 5},
    )


def malformed(kind: str = "invalid_json") -> ClassificationFailure:
    return ClassificationFailure(error_kind=kind, message="could not parse", raw_response="not json", model="fake-model")


class ScriptedClassifier:
    """Deterministic classifier.

    Args:
        script: Per-text answers; texts not in the script get ``default``
        default: Answer for unscripted texts
        crash_after: Raise SimulatedCrash on the call after this many calls
        hook: Called with the 1-based call number before answering
    """

    def __init__(
        self,
        script: Script | None = None,
        *,
        default: ScriptEntry | None = None,
        crash_after: int | None = None,
        hook: Callable[[int], None] | None = None,
    ) -> None:
        self._script = {text: list(entry) if isinstance(entry, list) else [entry] for text, entry in (script or {}).items()}
        self._default = default if default is not None else outcome()
        self._crash_after = crash_after
        self._hook = hook
        self._lock = threading.Lock()
        self.calls: list[str] = []
        self.timeouts: list[float] = []
        self.contexts: list[Mapping[str, Any] | None] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def classify(self, text: str, *, timeout: float, context: Mapping[str, Any] | None = None) -> ClassificationResult:
        with self._lock:
            self.calls.append(text)
            self.timeouts.append(timeout)
            self.contexts.append(context)
            number = len(self.calls)
            entries = self._script.get(text)
            if entries is None:
                entry = self._default
            elif len(entries) > 1:
                entry = entries.pop(0)
            else:
                entry = entries[0]

        if self._crash_after is not None and number > self._crash_after:
            raise SimulatedCrash(f"crash on call {number}")
        if self._hook is not None:
            self._hook(number)
        if isinstance(entry, Exception):
            raise entry
        return entry

    def factory(self) -> Callable[[ClassifierSettings], "ScriptedClassifier"]:
        return lambda settings: self


@pytest.fixture
def scripted_classifier() -> ScriptedClassifier:
    """Classifier that answers every item with a confident positive."""
    return ScriptedClassifier()
