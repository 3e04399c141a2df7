"""
Execution state persistence for pause/resume.

One ExecutionState per execution id, updated by the engine at start,
after every completed step and at the terminal transition. Designed with
an abstract interface so the JSON files can be swapped for a database.
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

import flow_config

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ExecutionState:
    id: str
    flow_key: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    last_completed_step_id: Optional[str] = None
    current_step_index: int = 0
    completed_steps: list[str] = field(default_factory=list)
    context_snapshot: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    paused_at: Optional[str] = None
    resumed_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "flowKey": self.flow_key,
            "status": self.status.value,
            "lastCompletedStepId": self.last_completed_step_id,
            "currentStepIndex": self.current_step_index,
            "completedSteps": list(self.completed_steps),
            "contextSnapshot": self.context_snapshot,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "pausedAt": self.paused_at,
            "resumedAt": self.resumed_at,
            "completedAt": self.completed_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionState:
        return cls(
            id=data["id"],
            flow_key=data["flowKey"],
            status=ExecutionStatus(data.get("status", "running")),
            last_completed_step_id=data.get("lastCompletedStepId"),
            current_step_index=data.get("currentStepIndex", 0),
            completed_steps=list(data.get("completedSteps") or []),
            context_snapshot=data.get("contextSnapshot") or {},
            created_at=data.get("createdAt") or _now(),
            updated_at=data.get("updatedAt") or _now(),
            paused_at=data.get("pausedAt"),
            resumed_at=data.get("resumedAt"),
            completed_at=data.get("completedAt"),
            error=data.get("error"),
        )


class ExecutionStateStore(Protocol):
    """Abstract interface for execution state storage."""

    def create_state(self, flow_key: str, context_snapshot: Optional[dict[str, Any]] = None,
                     state_id: Optional[str] = None) -> ExecutionState:
        ...

    def get_state(self, state_id: str) -> Optional[ExecutionState]:
        ...

    def update_state(self, state_id: str, **changes: Any) -> ExecutionState:
        ...

    def checkpoint(self, state_id: str, step_index: int, step_id: str,
                   context_snapshot: Optional[dict[str, Any]] = None) -> ExecutionState:
        ...

    def mark_running(self, state_id: str) -> ExecutionState:
        ...

    def mark_paused(self, state_id: str) -> ExecutionState:
        ...

    def mark_completed(self, state_id: str) -> ExecutionState:
        ...

    def mark_failed(self, state_id: str, error: Optional[str] = None) -> ExecutionState:
        ...

    def list_states(self, status: Optional[ExecutionStatus | str] = None,
                    flow_key: Optional[str] = None) -> list[ExecutionState]:
        ...

    def delete_state(self, state_id: str) -> bool:
        ...


class _BaseStateStore:
    """State transitions shared by the concrete stores. Subclasses provide storage."""

    def _load(self, state_id: str) -> Optional[ExecutionState]:
        raise NotImplementedError

    def _save(self, state: ExecutionState) -> None:
        raise NotImplementedError

    def _delete(self, state_id: str) -> bool:
        raise NotImplementedError

    def _all(self) -> list[ExecutionState]:
        raise NotImplementedError

    def create_state(self, flow_key, context_snapshot=None, state_id=None):
        state = ExecutionState(
            id=state_id or str(uuid.uuid4()),
            flow_key=flow_key,
            context_snapshot=copy.deepcopy(context_snapshot or {}),
        )
        self._save(state)
        logger.debug(f"Created execution state {state.id} for {flow_key}")
        return state

    def get_state(self, state_id):
        return self._load(state_id)

    def update_state(self, state_id, **changes):
        state = self._load(state_id)
        if state is None:
            raise KeyError(f"Execution state not found: {state_id}")
        for key, value in changes.items():
            if not hasattr(state, key):
                raise AttributeError(f"ExecutionState has no field '{key}'")
            setattr(state, key, value)
        state.updated_at = _now()
        self._save(state)
        return state

    def checkpoint(self, state_id, step_index, step_id, context_snapshot=None):
        state = self._load(state_id)
        if state is None:
            raise KeyError(f"Execution state not found: {state_id}")
        completed = list(state.completed_steps)
        if step_id not in completed:
            completed.append(step_id)
        changes: dict[str, Any] = {
            "last_completed_step_id": step_id,
            "current_step_index": step_index + 1,
            "completed_steps": completed,
        }
        if context_snapshot is not None:
            changes["context_snapshot"] = copy.deepcopy(context_snapshot)
        return self.update_state(state_id, **changes)

    def mark_running(self, state_id):
        return self.update_state(state_id, status=ExecutionStatus.RUNNING, resumed_at=_now())

    def mark_paused(self, state_id):
        return self.update_state(state_id, status=ExecutionStatus.PAUSED, paused_at=_now())

    def mark_completed(self, state_id):
        return self.update_state(state_id, status=ExecutionStatus.COMPLETED, completed_at=_now())

    def mark_failed(self, state_id, error=None):
        return self.update_state(state_id, status=ExecutionStatus.FAILED, completed_at=_now(), error=error)

    def list_states(self, status=None, flow_key=None):
        wanted = ExecutionStatus(status) if status is not None else None
        states = [
            s for s in self._all()
            if (wanted is None or s.status == wanted) and (flow_key is None or s.flow_key == flow_key)
        ]
        return sorted(states, key=lambda s: s.updated_at, reverse=True)

    def delete_state(self, state_id):
        deleted = self._delete(state_id)
        if deleted:
            logger.debug(f"Deleted execution state {state_id}")
        return deleted


class InMemoryExecutionStateStore(_BaseStateStore):
    """Keeps states for the lifetime of the process."""

    def __init__(self):
        self._states: dict[str, ExecutionState] = {}

    def _load(self, state_id):
        state = self._states.get(state_id)
        return copy.deepcopy(state) if state is not None else None

    def _save(self, state):
        self._states[state.id] = copy.deepcopy(state)

    def _delete(self, state_id):
        return self._states.pop(state_id, None) is not None

    def _all(self):
        return [copy.deepcopy(s) for s in self._states.values()]


class JSONExecutionStateStore(_BaseStateStore):
    """
    JSON-based implementation of ExecutionStateStore.

    Writes one <id>.json document per execution into state_dir.
    """

    def __init__(self, state_dir: str | Path = "output/states"):
        """
        Initialize the JSON state store.

        Args:
            state_dir: Directory for state files
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, state_id: str) -> Path:
        if not state_id or "/" in state_id or "\\" in state_id or state_id.startswith("."):
            raise KeyError(f"Invalid execution state id: {state_id!r}")
        return self.state_dir / f"{state_id}.json"

    def _read(self, path: Path) -> Optional[ExecutionState]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return ExecutionState.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Could not load execution state {path.name}: {e}")
            return None

    def _load(self, state_id):
        try:
            path = self._path(state_id)
        except KeyError:
            return None
        if not path.exists():
            return None
        return self._read(path)

    def _save(self, state):
        path = self._path(state.id)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2, ensure_ascii=False)
        tmp.replace(path)

    def _delete(self, state_id):
        try:
            path = self._path(state_id)
        except KeyError:
            return False
        if not path.exists():
            return False
        path.unlink()
        return True

    def _all(self):
        states = []
        for path in sorted(self.state_dir.glob("*.json")):
            state = self._read(path)
            if state is not None:
                states.append(state)
        return states


_default_store: Optional[ExecutionStateStore] = None


def get_default_state_store() -> ExecutionStateStore:
    """Process-wide store: JSON files when FLOW_STATE_DIR is set, memory otherwise."""
    global _default_store
    if _default_store is None:
        if flow_config.STATE_DIR:
            _default_store = JSONExecutionStateStore(flow_config.STATE_DIR)
        else:
            _default_store = InMemoryExecutionStateStore()
    return _default_store
