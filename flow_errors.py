"""
Exception types raised by the flow engine.

Validation problems are never raised; they are returned as
ValidationIssue data by flow_validator.validate().
"""

from __future__ import annotations

from typing import Any


class FlowError(Exception):
    """Base class for all flow engine errors."""


class StepExecutionError(FlowError):
    """A step implementation failed. Subject to the step's retry policy."""

    def __init__(self, step_id: str, cause: BaseException | str | None = None):
        self.step_id = step_id
        self.cause = cause if isinstance(cause, BaseException) else None
        if isinstance(cause, BaseException):
            detail = str(cause) or type(cause).__name__
        else:
            detail = cause or "step failed"
        super().__init__(f"Step '{step_id}' failed: {detail}")


class StepTimeoutError(StepExecutionError):
    def __init__(self, step_id: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(step_id, f"timed out after {timeout_ms}ms")


class ConfigurationError(FlowError):
    """Definition or wiring problem. Always fatal, never retried."""


class StepNotFoundError(ConfigurationError, KeyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No step implementation registered for '{name}'")

    def __str__(self) -> str:
        return self.args[0]


class InvalidFlowError(ConfigurationError):
    """Raised when a flow definition has validation errors."""

    def __init__(self, message: str, issues: list[Any] | None = None):
        self.issues = issues or []
        super().__init__(message)


class EngineStateError(FlowError):
    """Invalid pause/resume usage or a concurrent execution on one engine."""
