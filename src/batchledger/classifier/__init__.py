"""Classification service: protocol, OpenAI-compatible client, response normalisation."""

from batchledger.classifier.llm import OpenAIClassifier, build_classifier, classify_error
from batchledger.classifier.parsing import ParseFailure, ParseSuccess, normalize_response, repair_json
from batchledger.classifier.protocol import (
    Classifier,
    ClassifierError,
    ClassifierFactory,
    ContentPolicyError,
    ContextLengthError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from batchledger.classifier.templates import PromptTemplate, TemplateError

__all__ = [
    "Classifier",
    "ClassifierError",
    "ClassifierFactory",
    "ContentPolicyError",
    "ContextLengthError",
    "NetworkError",
    "OpenAIClassifier",
    "ParseFailure",
    "ParseSuccess",
    "PromptTemplate",
    "RateLimitError",
    "ServerError",
    "TemplateError",
    "build_classifier",
    "classify_error",
    "normalize_response",
    "repair_json",
]
