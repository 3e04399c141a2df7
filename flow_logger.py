"""
Structured execution log and error screenshots.

Entries are kept in memory for the FlowResult and forwarded to the
standard logging module.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class FlowLogger:
    """Collects log entries for one execution."""

    def __init__(
        self,
        flow_key: str,
        execution_id: str = "",
        verbose: bool = False,
        entries: list[dict[str, Any]] | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.flow_key = flow_key
        self.execution_id = execution_id
        self.verbose = verbose
        self.entries: list[dict[str, Any]] = entries if entries is not None else []
        self._context = dict(context or {})

    def bind(self, **context: Any) -> FlowLogger:
        """Child logger adding `context` to every entry. Shares the entry list."""
        return FlowLogger(
            self.flow_key,
            self.execution_id,
            self.verbose,
            entries=self.entries,
            context={**self._context, **context},
        )

    def debug(self, message: str, **data: Any) -> None:
        self._log("debug", message, data)

    def info(self, message: str, **data: Any) -> None:
        self._log("info", message, data)

    def warning(self, message: str, **data: Any) -> None:
        self._log("warn", message, data)

    def error(self, message: str, error: Optional[BaseException] = None, **data: Any) -> None:
        self._log("error", message, data, error)

    def _log(self, level: str, message: str, data: dict[str, Any], error: Optional[BaseException] = None) -> None:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "flowKey": self.flow_key,
            "executionId": self.execution_id,
            "message": message,
        }
        merged = {**self._context, **{k: v for k, v in data.items() if v is not None}}
        if merged:
            entry["data"] = merged
        if error is not None:
            entry["error"] = {"type": type(error).__name__, "message": str(error)}
        self.entries.append(entry)

        py_level = _LEVELS[level]
        if py_level < logging.WARNING and not self.verbose:
            py_level = logging.DEBUG
        step_id = merged.get("stepId")
        prefix = f"[{self.flow_key}:{step_id}]" if step_id else f"[{self.flow_key}]"
        if error is not None:
            message = f"{message}: {error}"
        logger.log(py_level, f"{prefix} {message}")

    def to_list(self) -> list[dict[str, Any]]:
        return list(self.entries)


async def capture_error_screenshot(session: Any, directory: str | Path, step_id: str) -> Optional[str]:
    """
    Save a full-page screenshot named error-<step id>-<epoch ms>.png.

    Returns the file path, or None if the session cannot take one.
    """
    screenshot = getattr(session, "screenshot", None)
    if session is None or not callable(screenshot):
        return None
    safe_id = _UNSAFE_CHARS.sub("_", step_id) or "step"
    path = Path(directory) / f"error-{safe_id}-{int(time.time() * 1000)}.png"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        await screenshot(path=str(path), full_page=True)
    except Exception as e:
        logger.warning(f"Could not capture screenshot for step {step_id}: {e}")
        return None
    return str(path)
