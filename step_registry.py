"""
Registry of custom step implementations.

Custom steps are looked up by name (the step's `handler`, or its id).
An implementation is either an object with execute(context, step) or a
plain callable taking (context, step); both may be sync or async.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Optional, Protocol, Union

from flow_errors import StepNotFoundError

logger = logging.getLogger(__name__)


class StepImplementation(Protocol):
    def execute(self, context: Any, step: Any) -> Any:
        ...


StepCallable = Union[StepImplementation, Callable[[Any, Any], Any]]


class StepRegistry:
    def __init__(self):
        self._steps: dict[str, StepCallable] = {}

    def register(self, name: str, impl: StepCallable, replace: bool = False) -> None:
        if not isinstance(name, str) or not name:
            raise ValueError("Step name must be a non-empty string")
        if name in self._steps and not replace:
            raise ValueError(f"Step '{name}' is already registered")
        if not callable(getattr(impl, "execute", None)) and not callable(impl):
            raise TypeError(f"Step '{name}' must be callable or have an execute() method")
        self._steps[name] = impl
        logger.debug(f"Registered step implementation: {name}")

    def get(self, name: str) -> StepCallable:
        try:
            return self._steps[name]
        except KeyError:
            raise StepNotFoundError(name) from None

    def has(self, name: str) -> bool:
        return name in self._steps

    def unregister(self, name: str) -> bool:
        return self._steps.pop(name, None) is not None

    def clear(self) -> None:
        self._steps.clear()

    def names(self) -> list[str]:
        return sorted(self._steps)

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __len__(self) -> int:
        return len(self._steps)


async def invoke_step(impl: StepCallable, context: Any, step: Any) -> Any:
    """Call a registered implementation and await the result if needed."""
    execute = getattr(impl, "execute", None)
    func = execute if callable(execute) else impl
    result = func(context, step)
    if inspect.isawaitable(result):
        result = await result
    return result


# Process-wide registry used by engines that are not given one
default_registry = StepRegistry()


def register_step(name: str, registry: Optional[StepRegistry] = None, replace: bool = False) -> Callable:
    """
    Decorator registering a function or class instance under `name`.

        @register_step("fetch-quote")
        async def fetch_quote(context, step):
            ...
    """
    def decorator(impl):
        (registry if registry is not None else default_registry).register(name, impl, replace=replace)
        return impl
    return decorator
