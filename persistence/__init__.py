"""
Persistence layer for flow execution state.

This package provides pause/resume state storage, with in-memory and
JSON-based implementations behind one protocol.
"""

from .execution_state import (
    ExecutionState,
    ExecutionStateStore,
    ExecutionStatus,
    InMemoryExecutionStateStore,
    JSONExecutionStateStore,
    get_default_state_store,
)

__all__ = [
    'ExecutionState',
    'ExecutionStateStore',
    'ExecutionStatus',
    'InMemoryExecutionStateStore',
    'JSONExecutionStateStore',
    'get_default_state_store',
]
