"""Core infrastructure: Ledger, Canonical, Configuration, Locking, Events, Logging."""

from batchledger.core.canonical import (
    CANONICAL_VERSION,
    canonical_json,
    file_checksum,
    stable_hash,
)
from batchledger.core.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from batchledger.core.config import (
    CheckpointSettings,
    ClassifierSettings,
    ConcurrencySettings,
    JobSettings,
    LedgerSettings,
    LockSettings,
    RetrySettings,
    ScopeSettings,
    SourceSettings,
    load_settings,
    resolve_config,
)
from batchledger.core.events import EventBus, EventBusProtocol, NullEventBus
from batchledger.core.logging import configure_logging, get_logger

__all__ = [
    "CANONICAL_VERSION",
    "DEFAULT_CLOCK",
    "CheckpointSettings",
    "ClassifierSettings",
    "Clock",
    "ConcurrencySettings",
    "EventBus",
    "EventBusProtocol",
    "JobSettings",
    "LedgerSettings",
    "LockSettings",
    "MockClock",
    "NullEventBus",
    "RetrySettings",
    "ScopeSettings",
    "SourceSettings",
    "SystemClock",
    "canonical_json",
    "configure_logging",
    "file_checksum",
    "get_logger",
    "load_settings",
    "resolve_config",
    "stable_hash",
]
