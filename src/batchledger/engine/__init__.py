"""Execution engine: drives jobs through classification with checkpoints, retries and locking."""

from batchledger.engine.orchestrator import ExecutionEngine
from batchledger.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

__all__ = [
    "ExecutionEngine",
    "MaxRetriesExceeded",
    "RetryConfig",
    "RetryManager",
]
