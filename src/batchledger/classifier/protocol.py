"""Classification service boundary.

The engine depends only on this module: a Classifier protocol, the
transport error hierarchy that tells the engine whether a failure is worth
retrying, and the factory type used to build a classifier from settings.
"""

from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from batchledger.contracts.classification import ClassificationResult
from batchledger.core.config import ClassifierSettings


class ClassifierError(Exception):
    """Transport-level failure of a classification call.

    Attributes:
        retryable: Whether the failure is likely transient
    """

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class RateLimitError(ClassifierError):
    """Rate limit exceeded - retryable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


class NetworkError(ClassifierError):
    """Network/connection failure or timeout - retryable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


class ServerError(ClassifierError):
    """Server error (5xx) - retryable.

    Covers 500 Internal Server Error, 502 Bad Gateway, 503 Service
    Unavailable, 504 Gateway Timeout and 529 Overloaded.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


class ContentPolicyError(ClassifierError):
    """Content policy violation - not retryable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class ContextLengthError(ClassifierError):
    """Input exceeds the model's context window - not retryable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


@runtime_checkable
class Classifier(Protocol):
    """Anything that can classify one text under a deadline.

    Returns ClassificationOutcome for a usable answer and
    ClassificationFailure for an answer that could not be normalised.
    Raises ClassifierError for transport failures.
    """

    def classify(
        self,
        text: str,
        *,
        timeout: float,
        context: Mapping[str, Any] | None = None,
    ) -> ClassificationResult: ...


ClassifierFactory = Callable[[ClassifierSettings], Classifier]
