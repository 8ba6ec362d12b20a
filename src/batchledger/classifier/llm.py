"""OpenAI-compatible chat-completion classifier.

Works against api.openai.com or any OpenAI-compatible endpoint (LM Studio,
vLLM, Ollama's /v1) via ``base_url``. Transport errors are classified into
retryable (rate limit, server, network) and permanent (content policy,
context length, other client errors) ClassifierErrors; answers are passed
through response normalisation.
"""

import os
import re
import time
from collections.abc import Mapping
from typing import Any

from batchledger.classifier.parsing import ParseFailure, normalize_response
from batchledger.classifier.protocol import (
    ClassifierError,
    ContentPolicyError,
    ContextLengthError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from batchledger.classifier.templates import PromptTemplate
from batchledger.contracts.classification import ClassificationFailure, ClassificationOutcome, ClassificationResult
from batchledger.core.config import ClassifierSettings
from batchledger.core.logging import get_logger

logger = get_logger(__name__)

# First match wins; checked against "<ExceptionType>: <message>" lowercased
_ERROR_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("content_policy", re.compile(r"content[_ ]policy|safety system")),
    ("context_length", re.compile(r"context[_ ]length|maximum context")),
    (
        "rate_limit",
        re.compile(
            r"\b429\b|\brate[\s_-]*limit(?:ed|ing)?\b|\brate(?:\s+has\s+been)?\s+exceeded\b"
            r"|\btoo many requests\b|\bthrottl(?:e|ed|ing)\b"
        ),
    ),
    ("server", re.compile(r"\b(?:500|502|503|504|529)\b")),
    (
        "network",
        re.compile(r"time(?:d )?out|connection (?:refused|reset|aborted|error)|(?:network|host) unreachable|\bdns\b|getaddrinfo failed"),
    ),
    ("client", re.compile(r"\b(?:400|401|403|404|422)\b")),
)

_ERROR_TYPES: dict[str, type[ClassifierError]] = {
    "rate_limit": RateLimitError,
    "server": ServerError,
    "network": NetworkError,
    "content_policy": ContentPolicyError,
    "context_length": ContextLengthError,
}


def classify_error(exception: Exception) -> str:
    """Classify a client exception into a canonical category.

    Matches on the exception text so that it works for the openai SDK and
    for OpenAI-compatible servers that return non-standard errors. A bare
    "rate" substring is not a rate limit.

    Returns:
        One of content_policy, context_length, rate_limit, server, network,
        client, unknown
    """
    error_str = f"{type(exception).__name__}: {exception}".lower()
    return next((category for category, pattern in _ERROR_RULES if pattern.search(error_str)), "unknown")


def to_classifier_error(exception: Exception) -> ClassifierError:
    """Wrap a client exception in the ClassifierError subclass for its category."""
    message = f"{type(exception).__name__}: {exception}"
    error_type = _ERROR_TYPES.get(classify_error(exception))
    if error_type is None:
        return ClassifierError(message, retryable=False)
    return error_type(message)


class OpenAIClassifier:
    """Classifier backed by an OpenAI-compatible chat completion endpoint.

    Args:
        settings: Classifier settings (model, prompts, timeout, ...)
        client: Pre-built client; tests pass a stub with
            ``chat.completions.create``. When omitted an ``openai.OpenAI``
            client is built with the key from ``settings.api_key_env``.
    """

    def __init__(self, settings: ClassifierSettings, client: Any = None) -> None:
        self._settings = settings
        self._template = PromptTemplate(settings.user_template)
        if client is None:
            import openai

            api_key = os.environ.get(settings.api_key_env)
            if api_key is None and settings.base_url is None:
                raise ValueError(f"Environment variable {settings.api_key_env} is not set")
            # Local OpenAI-compatible servers accept any key
            client = openai.OpenAI(api_key=api_key or "not-needed", base_url=settings.base_url, max_retries=0)
        self._client = client
        logger.debug("classifier_ready", model=settings.model, base_url=settings.base_url, template_hash=self._template.template_hash)

    def _messages(self, text: str, context: Mapping[str, Any] | None) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if self._settings.system_prompt:
            messages.append({"role": "system", "content": self._settings.system_prompt})
        messages.append({"role": "user", "content": self._template.render(text, context)})
        return messages

    def classify(
        self,
        text: str,
        *,
        timeout: float,
        context: Mapping[str, Any] | None = None,
    ) -> ClassificationResult:
        """Classify one text.

        Raises:
            ClassifierError: For transport failures (check ``retryable``)
            TemplateError: If the user template cannot render for this item
        """
        sdk_kwargs: dict[str, Any] = {
            "model": self._settings.model,
            "messages": self._messages(text, context),
            "temperature": self._settings.temperature,
            "timeout": timeout,
        }
        # Omit rather than send null; some providers reject max_tokens=null
        if self._settings.max_tokens is not None:
            sdk_kwargs["max_tokens"] = self._settings.max_tokens
        if self._settings.response_format == "json_object":
            sdk_kwargs["response_format"] = {"type": "json_object"}

        start = time.perf_counter()
        try:
            response = self._client.chat.completions.create(**sdk_kwargs)
        except Exception as e:
            error = to_classifier_error(e)
            logger.debug(
                "classifier_call_failed",
                error_type=type(e).__name__,
                retryable=error.retryable,
                latency_ms=(time.perf_counter() - start) * 1000,
            )
            raise error from e
        latency_ms = (time.perf_counter() - start) * 1000

        content = response.choices[0].message.content if response.choices else None
        usage: dict[str, int] = {}
        # Some providers omit usage
        if getattr(response, "usage", None) is not None:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
            }
        model = getattr(response, "model", None) or self._settings.model

        parsed = normalize_response(
            content,
            required_fields=self._settings.required_fields,
            confidence_field=self._settings.confidence_field,
        )
        if isinstance(parsed, ParseFailure):
            return ClassificationFailure(
                error_kind=parsed.reason,
                message=parsed.detail or parsed.reason,
                raw_response=content,
                model=model,
                usage=usage,
                latency_ms=latency_ms,
            )
        return ClassificationOutcome(
            payload=parsed.payload,
            confidence=parsed.confidence,
            raw_response=content,
            model=model,
            usage=usage,
            latency_ms=latency_ms,
        )


def build_classifier(settings: ClassifierSettings) -> OpenAIClassifier:
    """Default classifier factory used by the CLI."""
    return OpenAIClassifier(settings)
