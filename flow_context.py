"""
Runtime context and result types for flow execution.

The definition models in flow_models are immutable; everything here is
per-run state owned by the engine or the caller.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


@dataclass
class ExecutionFlags:
    """Per-run switches. None means: use the flow config, then the global default."""
    skip_auth: bool = False
    stop_on_error: Optional[bool] = None
    verbose: bool = False
    screenshot_on_error: Optional[bool] = None
    enable_pause_resume: bool = False


@dataclass
class ExecutionContext:
    session: Any = None  # Playwright async Page
    input: dict[str, Any] = field(default_factory=dict)
    credentials: Optional[Credentials] = None
    artifacts_dir: Optional[str] = None
    flags: ExecutionFlags = field(default_factory=ExecutionFlags)
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    vars: dict[str, Any] = field(default_factory=dict)
    capabilities: dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe copy of input and vars. Credentials, env and session are never included."""
        return json.loads(json.dumps({"input": self.input, "vars": self.vars}, default=str))


@dataclass
class StepResult:
    step_id: str
    status: StepStatus = StepStatus.PENDING
    duration_ms: int = 0
    error: Optional[BaseException] = None
    attempts: int = 0
    output: dict[str, Any] = field(default_factory=dict)
    skip_reason: Optional[str] = None
    screenshot: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == StepStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "stepId": self.step_id,
            "status": self.status.value,
            "durationMs": self.duration_ms,
            "attempts": self.attempts,
        }
        if self.error is not None:
            data["error"] = str(self.error)
        if self.output:
            data["output"] = self.output
        if self.skip_reason:
            data["skipReason"] = self.skip_reason
        if self.screenshot:
            data["screenshot"] = self.screenshot
        return data


@dataclass
class FlowResult:
    """
    Outcome of one execute() or resume() call.

    A paused run is not finished: success is False, error is None and
    paused is True. Resume it with state_id.
    """

    success: bool
    flow_key: str = ""
    execution_id: str = ""
    steps_executed: int = 0
    step_results: list[StepResult] = field(default_factory=list)
    total_duration: int = 0
    error: Optional[BaseException] = None
    state_id: Optional[str] = None
    logs: list[dict[str, Any]] = field(default_factory=list)
    paused: bool = False
    output: dict[str, Any] = field(default_factory=dict)

    def failed_steps(self) -> list[StepResult]:
        return [r for r in self.step_results if r.status == StepStatus.FAILED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "flowKey": self.flow_key,
            "executionId": self.execution_id,
            "stepsExecuted": self.steps_executed,
            "stepResults": [r.to_dict() for r in self.step_results],
            "totalDuration": self.total_duration,
            "error": str(self.error) if self.error is not None else None,
            "stateId": self.state_id,
            "paused": self.paused,
            "output": self.output,
            "logs": self.logs,
        }
