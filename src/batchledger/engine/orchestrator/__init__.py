"""Orchestrator package: the run lifecycle of a batch job.

Public API:
- ExecutionEngine: start, resume, status and cancel jobs
- EngineStateMachine: validated lifecycle transitions
- ItemProcessor: one item through the classifier under retries

Module structure:
- core.py: ExecutionEngine (main entry point)
- state.py: EngineStateMachine and its transition table
- items.py: ItemProcessor
- types.py: RunContext, ExecutionCounters, StopReason
"""

from batchledger.engine.orchestrator.core import EXIT_FAILED, EXIT_INTERRUPTED, EXIT_OK, ExecutionEngine
from batchledger.engine.orchestrator.items import ItemProcessor
from batchledger.engine.orchestrator.state import TRANSITIONS, EngineStateMachine
from batchledger.engine.orchestrator.types import ExecutionCounters, RunContext, StopReason

__all__ = [
    "EXIT_FAILED",
    "EXIT_INTERRUPTED",
    "EXIT_OK",
    "TRANSITIONS",
    "EngineStateMachine",
    "ExecutionCounters",
    "ExecutionEngine",
    "ItemProcessor",
    "RunContext",
    "StopReason",
]
