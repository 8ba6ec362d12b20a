"""
Canonical JSON serialization and checksums.

Values pass through two steps before hashing:
1. Normalize: spreadsheet and dataframe cell types (numpy scalars, pandas
   timestamps and missing markers, Decimal, bytes) become JSON primitives
2. Serialize: RFC 8785/JCS output from the rfc8785 package

Canonical JSON is used for the config snapshot stored with every job, for
item attributes lifted from spreadsheet cells, and for result payloads, so
that equal content always hashes to the same digest.

NaN and Infinity are REJECTED, not silently converted. The loader maps
empty cells to None before anything reaches this module.
"""

import base64
import hashlib
import math
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import numpy as np
import pandas as pd
import rfc8785

# Stored with every job so snapshots hashed under another scheme are detectable
CANONICAL_VERSION = "sha256-rfc8785-v1"

_READ_CHUNK = 1024 * 1024


def _finite(value: float) -> float:
    if math.isnan(value) or math.isinf(value):
        raise ValueError(f"Cannot canonicalize non-finite float: {value}. Use None for missing values, not NaN.")
    return float(value)


def _utc_isoformat(value: datetime) -> str:
    # Naive means UTC; pd.Timestamp takes this path too
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _normalize_value(obj: Any) -> Any:
    """Convert a single cell or scalar to a JSON-safe primitive.

    Raises:
        ValueError: If value is NaN or Infinity
    """
    # NaT is a datetime subclass, so missing markers go first
    if obj is None or obj is pd.NA or obj is pd.NaT:
        return None
    if isinstance(obj, bool | np.bool_):
        return bool(obj)
    if isinstance(obj, int | np.integer):
        return int(obj)
    if isinstance(obj, float | np.floating):
        return _finite(obj)
    if isinstance(obj, str):
        return obj
    if isinstance(obj, datetime):
        return _utc_isoformat(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        if not obj.is_finite():
            raise ValueError(f"Cannot canonicalize non-finite Decimal: {obj}.")
        # Exact: "0.10" stays "0.10"
        return str(obj)
    if isinstance(obj, bytes):
        return {"__bytes__": base64.b64encode(obj).decode("ascii")}
    if isinstance(obj, np.ndarray):
        return [_normalize_value(x) for x in obj.tolist()]
    return obj


def normalize_for_canonical(data: Any) -> Any:
    """Recursively normalize a data structure to JSON-safe types.

    Mapping keys become strings; tuples become lists.
    """
    if isinstance(data, dict):
        return {str(k): normalize_for_canonical(v) for k, v in data.items()}
    if isinstance(data, list | tuple):
        return [normalize_for_canonical(v) for v in data]
    return _normalize_value(data)


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON (no whitespace, sorted keys).

    Raises:
        ValueError: If data contains NaN, Infinity, or other non-finite values
        TypeError: If data contains types that cannot be serialized
    """
    return rfc8785.dumps(normalize_for_canonical(obj)).decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of the canonical JSON of ``obj``."""
    return bytes_checksum(canonical_json(obj).encode("utf-8"))


def bytes_checksum(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def file_checksum(path: str) -> str:
    """SHA-256 hex digest of a file's bytes, read in chunks.

    Raises:
        OSError: If the file cannot be opened or read
    """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_READ_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()
