"""Response normalisation for classifier answers.

Classifier responses are external data - zero trust. This module turns raw
model text into a structured payload or a typed failure, and never raises.
It is a pure function so it can be property-tested with Hypothesis.

Steps:
1. Strip chat special tokens such as <|channel|> and <|message|>
2. Repair spelled-out decimals ("0. nine" -> "0.9")
3. Parse JSON; if the whole text is not JSON, parse the first {...} block
4. Require an object that serialises canonically (JCS integer and float ranges)
5. Require the configured fields
6. Read the confidence field as a number in [0, 1]
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any

from batchledger.core.canonical import canonical_json

_SPECIAL_TOKEN_PATTERN = re.compile(r"<\|[^|]+\|>")
_JSON_OBJECT_PATTERN = re.compile(r"\{[^{}]*\}")

_SPELLED_DIGITS = {
    "zero": "0",
    "one": "1",
    "two": "2",
    "three": "3",
    "four": "4",
    "five": "5",
    "six": "6",
    "seven": "7",
    "eight": "8",
    "nine": "9",
}
_SPELLED_DECIMAL_PATTERN = re.compile(r"\b0\.\s*(" + "|".join(_SPELLED_DIGITS) + r")\b", re.IGNORECASE)


@dataclass(frozen=True)
class ParseSuccess:
    """A response that normalised into a payload."""

    payload: dict[str, Any]
    confidence: float | None = None


@dataclass(frozen=True)
class ParseFailure:
    """A response that could not be normalised.

    reason is one of: empty_response, invalid_json, invalid_json_type,
    missing_field, invalid_confidence.
    """

    reason: str
    detail: str | None = None


ParseResult = ParseSuccess | ParseFailure


def strip_special_tokens(content: str) -> str:
    return _SPECIAL_TOKEN_PATTERN.sub("", content).strip()


def repair_json(content: str) -> str:
    """Rewrite spelled-out decimals that some models emit: ``0. nine`` -> ``0.9``."""
    return _SPELLED_DECIMAL_PATTERN.sub(lambda m: "0." + _SPELLED_DIGITS[m.group(1).lower()], content)


def _reject_constant(name: str) -> Any:
    # json.loads would otherwise accept NaN/Infinity, which can't be stored canonically
    raise ValueError(f"non-finite number {name} in response")


def _parse_float(text: str) -> float:
    number = float(text)
    if not math.isfinite(number):
        raise ValueError(f"number {text} overflows a float")
    return number


def _loads(text: str) -> Any:
    return json.loads(text, parse_constant=_reject_constant, parse_float=_parse_float)


def parse_json_object(text: str) -> ParseResult:
    """Parse text as a JSON object, falling back to the first {...} block."""
    try:
        parsed = _loads(text)
    except (ValueError, RecursionError) as e:
        match = _JSON_OBJECT_PATTERN.search(text)
        if match is None:
            return ParseFailure(reason="invalid_json", detail=str(e))
        try:
            parsed = _loads(match.group(0))
        except (ValueError, RecursionError) as inner:
            return ParseFailure(reason="invalid_json", detail=str(inner))

    if not isinstance(parsed, dict):
        return ParseFailure(reason="invalid_json_type", detail=f"expected object, got {type(parsed).__name__}")
    return ParseSuccess(payload=parsed)


def _read_confidence(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number) or not 0.0 <= number <= 1.0:
        return None
    return number


def normalize_response(
    content: str | None,
    *,
    required_fields: list[str] | tuple[str, ...] = ("detected",),
    confidence_field: str | None = "confidence",
) -> ParseResult:
    """Normalise raw classifier text into a payload and confidence.

    A ``null`` or absent confidence is accepted as None unless the confidence
    field is also listed in ``required_fields``. A present but unusable
    confidence (non-numeric, outside [0, 1]) is a failure.
    """
    if content is None or not content.strip():
        return ParseFailure(reason="empty_response")

    cleaned = repair_json(strip_special_tokens(content))
    if not cleaned:
        return ParseFailure(reason="empty_response", detail="only special tokens")

    parsed = parse_json_object(cleaned)
    if isinstance(parsed, ParseFailure):
        return parsed

    payload = parsed.payload
    try:
        canonical_json(payload)
    except (ValueError, TypeError, RecursionError) as e:
        return ParseFailure(reason="invalid_json", detail=f"payload cannot be stored: {e}")

    missing = [name for name in required_fields if name not in payload or payload[name] is None]
    if missing:
        return ParseFailure(reason="missing_field", detail=", ".join(missing))

    confidence: float | None = None
    if confidence_field is not None and payload.get(confidence_field) is not None:
        confidence = _read_confidence(payload[confidence_field])
        if confidence is None:
            return ParseFailure(
                reason="invalid_confidence",
                detail=f"{confidence_field}={payload[confidence_field]!r} is not a number in [0, 1]",
            )

    return ParseSuccess(payload=payload, confidence=confidence)
