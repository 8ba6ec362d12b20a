"""Classification service boundary contracts.

A classifier answers every call with exactly one of these two shapes.
Transport-level problems (timeouts, 5xx, rate limits) are raised as
ClassifierError instead, so the engine can decide whether to retry.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ClassificationOutcome:
    """A response that normalised into a valid structured result."""

    payload: dict[str, Any]
    confidence: float | None = None
    raw_response: str | None = None
    model: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: float | None = None


@dataclass(frozen=True)
class ClassificationFailure:
    """A response that came back but could not be normalised.

    Recorded immediately as a permanent item error - retrying the same
    prompt is not expected to help.
    """

    error_kind: str
    message: str
    raw_response: str | None = None
    model: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: float | None = None


ClassificationResult = ClassificationOutcome | ClassificationFailure
