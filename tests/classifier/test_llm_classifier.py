"""Tests for the OpenAI-compatible classifier using a stub client."""

from types import SimpleNamespace
from typing import Any

import pytest

from batchledger.classifier import (
    ClassifierError,
    ContentPolicyError,
    ContextLengthError,
    NetworkError,
    OpenAIClassifier,
    RateLimitError,
    ServerError,
    TemplateError,
    build_classifier,
    classify_error,
)
from batchledger.contracts.classification import ClassificationFailure, ClassificationOutcome
from batchledger.core.config import ClassifierSettings


class StubCompletions:
    def __init__(self, content: str | None = None, *, error: Exception | None = None, usage: bool = True) -> None:
        self._content = content
        self._error = error
        self._usage = usage
        self.requests: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.requests.append(kwargs)
        if self._error is not None:
            raise self._error
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self._content))],
            usage=SimpleNamespace(prompt_tokens=21, completion_tokens=7) if self._usage else None,
            model="served-model",
        )


def _client(completions: StubCompletions) -> Any:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _settings(**overrides: Any) -> ClassifierSettings:
    values: dict[str, Any] = {"model": "gpt-4o-mini"}
    values.update(overrides)
    return ClassifierSettings(**values)


class TestClassify:
    def test_outcome(self) -> None:
        completions = StubCompletions('{"detected": true, "confidence": 0.7}')
        classifier = OpenAIClassifier(_settings(), client=_client(completions))

        result = classifier.classify("He threatened her.", timeout=12.0)

        assert isinstance(result, ClassificationOutcome)
        assert result.payload == {"detected": True, "confidence": 0.7}
        assert result.confidence == 0.7
        assert result.model == "served-model"
        assert result.usage == {"prompt_tokens": 21, "completion_tokens": 7}
        assert result.raw_response == '{"detected": true, "confidence": 0.7}'

    def test_request_shape(self) -> None:
        completions = StubCompletions('{"detected": false}')
        settings = _settings(
            system_prompt="You screen incident narratives.",
            user_template="[{{ item.item_type }}] {{ text }}",
            max_tokens=50,
            response_format="json_object",
        )
        classifier = OpenAIClassifier(settings, client=_client(completions))

        classifier.classify("narrative", timeout=9.0, context={"item_type": "cme"})

        (request,) = completions.requests
        assert request["model"] == "gpt-4o-mini"
        assert request["timeout"] == 9.0
        assert request["max_tokens"] == 50
        assert request["response_format"] == {"type": "json_object"}
        assert request["messages"] == [
            {"role": "system", "content": "You screen incident narratives."},
            {"role": "user", "content": "[cme] narrative"},
        ]

    def test_optional_fields_omitted(self) -> None:
        completions = StubCompletions('{"detected": false}')
        OpenAIClassifier(_settings(), client=_client(completions)).classify("x", timeout=1.0)

        (request,) = completions.requests
        assert "max_tokens" not in request
        assert "response_format" not in request
        assert [m["role"] for m in request["messages"]] == ["user"]

    def test_unparseable_answer_is_failure_not_exception(self) -> None:
        completions = StubCompletions("I cannot answer that.")
        result = OpenAIClassifier(_settings(), client=_client(completions)).classify("x", timeout=1.0)

        assert isinstance(result, ClassificationFailure)
        assert result.error_kind == "invalid_json"
        assert result.raw_response == "I cannot answer that."

    def test_missing_usage_tolerated(self) -> None:
        completions = StubCompletions('{"detected": true}', usage=False)
        result = OpenAIClassifier(_settings(), client=_client(completions)).classify("x", timeout=1.0)

        assert isinstance(result, ClassificationOutcome)
        assert result.usage == {}

    def test_template_error_propagates(self) -> None:
        completions = StubCompletions('{"detected": true}')
        classifier = OpenAIClassifier(_settings(user_template="{{ item.attributes.Region }}"), client=_client(completions))

        with pytest.raises(TemplateError):
            classifier.classify("x", timeout=1.0, context={"attributes": {}})
        assert completions.requests == []

    @pytest.mark.parametrize(
        ("error", "expected", "retryable"),
        [
            (RuntimeError("Error code: 429 - Too Many Requests"), RateLimitError, True),
            (RuntimeError("Error code: 503 - Service Unavailable"), ServerError, True),
            (TimeoutError("Request timed out."), NetworkError, True),
            (RuntimeError("content_policy_violation"), ContentPolicyError, False),
            (RuntimeError("This model's maximum context length is 8192 tokens"), ContextLengthError, False),
            (RuntimeError("Error code: 401 - invalid api key"), ClassifierError, False),
        ],
    )
    def test_transport_errors_classified(self, error: Exception, expected: type[ClassifierError], retryable: bool) -> None:
        completions = StubCompletions(error=error)
        classifier = OpenAIClassifier(_settings(), client=_client(completions))

        with pytest.raises(ClassifierError) as exc_info:
            classifier.classify("x", timeout=1.0)

        assert type(exc_info.value) is expected
        assert exc_info.value.retryable is retryable
        assert exc_info.value.__cause__ is error


class TestClassifyError:
    @pytest.mark.parametrize(
        ("message", "category"),
        [
            ("rate limited, slow down", "rate_limit"),
            ("request throttled", "rate_limit"),
            ("accurate answer", "unknown"),
            ("502 Bad Gateway", "server"),
            ("Connection refused", "network"),
            ("404 model not found", "client"),
            ("something odd", "unknown"),
        ],
    )
    def test_categories(self, message: str, category: str) -> None:
        assert classify_error(RuntimeError(message)) == category


class TestConstruction:
    def test_missing_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("BL_TEST_KEY", raising=False)

        with pytest.raises(ValueError, match="BL_TEST_KEY is not set"):
            build_classifier(_settings(api_key_env="BL_TEST_KEY"))

    def test_local_endpoint_needs_no_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("BL_TEST_KEY", raising=False)

        classifier = build_classifier(_settings(api_key_env="BL_TEST_KEY", base_url="http://localhost:1234/v1"))

        assert isinstance(classifier, OpenAIClassifier)

    def test_invalid_template_rejected_at_settings(self) -> None:
        with pytest.raises(ValueError):
            _settings(user_template="{% if %}")
