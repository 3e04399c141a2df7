"""
Built-in step handlers and the browser action executor.

Each built-in step type (auth, navigation, form-fill, extraction) has one
small handler class. Custom steps go through the step registry. All
browser calls use the Playwright async Page API; the engine never opens or
closes the page itself.

Platform-specific behaviour plugs in through capability objects found in
context.capabilities under the step id.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Optional, Protocol, runtime_checkable

import flow_config
from flow_errors import ConfigurationError, StepExecutionError
from flow_expressions import ExpressionResolver
from flow_models import (
    ActionDefinition,
    AuthStep,
    CustomStep,
    ExtractionStep,
    FieldDefinition,
    FormFillStep,
    NavigationStep,
    selector_value,
)
from flow_transforms import apply_transforms
from step_registry import invoke_step

logger = logging.getLogger(__name__)

_TRUE_STRINGS = ("true", "1", "yes", "on", "oui")


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


# --- Capability interfaces ---


@runtime_checkable
class AuthCapability(Protocol):
    async def login(self, session: Any) -> Any:
        ...


@runtime_checkable
class NavigationCapability(Protocol):
    async def execute(self, session: Any) -> Any:
        ...


@runtime_checkable
class FormFillCapability(Protocol):
    async def check_for_errors(self, session: Any) -> list[str]:
        ...


# --- Action executor ---


class ActionExecutor:
    """Runs declarative actions and field fills against a Playwright page."""

    def __init__(self, page: Any, resolver: ExpressionResolver, timeout_ms: int = flow_config.DEFAULT_STEP_TIMEOUT_MS):
        self.page = page
        self.resolver = resolver
        self.timeout_ms = timeout_ms

    def _require_page(self) -> Any:
        if self.page is None:
            raise RuntimeError("No browser session in the execution context")
        return self.page

    def _selector(self, selector: Any) -> str:
        value = selector_value(selector)
        if not value:
            raise ConfigurationError("Action requires a selector")
        return str(self.resolver.resolve(value))

    async def run_all(self, actions: Optional[list[ActionDefinition]]) -> None:
        for action in actions or ():
            await self.execute(action)

    async def execute(self, action: ActionDefinition) -> Any:
        if action.wait_before:
            await asyncio.sleep(action.wait_before / 1000)
        try:
            result = await self._dispatch(action)
        except ConfigurationError:
            raise
        except Exception as e:
            if not action.optional:
                raise
            logger.warning(f"Optional action {action.type} failed: {e}")
            result = None
        if action.wait_after:
            await asyncio.sleep(action.wait_after / 1000)
        return result

    async def _dispatch(self, action: ActionDefinition) -> Any:
        page = self._require_page()
        kind = action.type
        timeout = action.timeout or self.timeout_ms
        value = self.resolver.resolve(action.value)
        logger.debug(f"Action: {action.description or kind}")

        if kind in ("goto", "navigate"):
            url = self.resolver.resolve(action.url or action.value)
            if not url:
                raise ConfigurationError("goto action requires a url")
            await page.goto(
                str(url),
                wait_until=action.wait_until or "domcontentloaded",
                timeout=action.timeout or flow_config.NAVIGATION_TIMEOUT_MS,
            )

        elif kind == "back":
            await page.go_back(timeout=timeout)

        elif kind == "reload":
            await page.reload(timeout=timeout)

        elif kind == "waitFor":
            if action.selector is not None:
                await page.wait_for_selector(
                    self._selector(action.selector), state=action.state or "visible", timeout=timeout)
            elif value:
                await page.wait_for_timeout(float(value))

        elif kind == "waitForNavigation":
            if action.url:
                await page.wait_for_url(self.resolver.resolve(action.url), timeout=timeout)
            else:
                await page.wait_for_load_state(
                    action.wait_until or "load", timeout=action.timeout or flow_config.NAVIGATION_TIMEOUT_MS)

        elif kind == "wait":
            await page.wait_for_timeout(float(value or 0))

        elif kind == "click":
            await page.click(self._selector(action.selector), timeout=timeout, force=action.force)

        elif kind == "fill":
            text = "" if value is None else str(value)
            await page.fill(self._selector(action.selector), text, timeout=timeout, force=action.force)

        elif kind == "type":
            text = "" if value is None else str(value)
            await page.locator(self._selector(action.selector)).press_sequentially(text, delay=50, timeout=timeout)

        elif kind == "clear":
            await page.fill(self._selector(action.selector), "", timeout=timeout, force=action.force)

        elif kind == "press":
            key = self.resolver.resolve(action.key or value)
            if action.selector is not None:
                await page.press(self._selector(action.selector), str(key), timeout=timeout)
            else:
                await page.keyboard.press(str(key))

        elif kind in ("select", "selectOption"):
            await page.select_option(self._selector(action.selector), value, timeout=timeout, force=action.force)

        elif kind == "check":
            selector = self._selector(action.selector)
            if action.checked is False:
                await page.uncheck(selector, timeout=timeout, force=action.force)
            else:
                await page.check(selector, timeout=timeout, force=action.force)

        elif kind == "uncheck":
            await page.uncheck(self._selector(action.selector), timeout=timeout, force=action.force)

        elif kind == "hover":
            await page.hover(self._selector(action.selector), timeout=timeout, force=action.force)

        elif kind == "screenshot":
            path = self.resolver.resolve(action.path or value)
            if not path:
                raise ConfigurationError("screenshot action requires a path")
            await page.screenshot(path=str(path), full_page=bool(action.full_page))

        elif kind == "evaluate":
            return await page.evaluate(action.script or value)

        elif kind == "uploadFile":
            files = self.resolver.resolve(action.path or value)
            await page.set_input_files(self._selector(action.selector), files, timeout=timeout)

        else:
            raise ConfigurationError(f"Unknown action type: {kind}")

        return None

    async def click(self, selector: Any) -> None:
        await self._require_page().click(self._selector(selector), timeout=self.timeout_ms)

    async def wait_for(self, selector: Any, state: str = "visible") -> None:
        await self._require_page().wait_for_selector(self._selector(selector), state=state, timeout=self.timeout_ms)

    async def read(self, selector: Any, attribute: Optional[str] = None) -> Optional[str]:
        """Inner text of the element, or one of its attributes."""
        page = self._require_page()
        target = self._selector(selector)
        if attribute:
            return await page.get_attribute(target, attribute, timeout=self.timeout_ms)
        return await page.inner_text(target, timeout=self.timeout_ms)

    async def fill_field(self, field: FieldDefinition, value: Any) -> None:
        """Fill one form field according to its type."""
        page = self._require_page()
        selector = selector_value(field.selector)
        if not selector:
            raise ConfigurationError(f"Field '{field.id}' has no selector")
        selector = str(self.resolver.resolve(selector))
        timeout = self.timeout_ms

        if field.wait_for:
            await page.wait_for_selector(selector, state="visible", timeout=timeout)

        text = "" if value is None else str(value)
        if field.type == "select":
            await page.select_option(selector, text, timeout=timeout)
        elif field.type == "checkbox":
            if _truthy(value):
                await page.check(selector, timeout=timeout)
            else:
                await page.uncheck(selector, timeout=timeout)
        elif field.type == "radio":
            if "$value" in selector:
                target = selector.replace("$value", text)
            else:
                target = f'{selector}[value="{text}"]'
            await page.check(target, timeout=timeout)
        elif field.type == "file":
            await page.set_input_files(selector, text, timeout=timeout)
        elif field.type == "date":
            await page.fill(selector, "", timeout=timeout)
            await page.fill(selector, text, timeout=timeout)
        else:
            await page.fill(selector, text, timeout=timeout)


# --- Step handlers ---


class StepHandler:
    """Runs one step. A returned mapping is merged into the run variables."""

    async def run(self, step: Any, context: Any, executor: ActionExecutor) -> Optional[dict[str, Any]]:
        raise NotImplementedError


class AuthHandler(StepHandler):
    async def run(self, step: AuthStep, context, executor):
        capability = context.capabilities.get(step.id)
        if isinstance(capability, AuthCapability):
            await maybe_await(capability.login(context.session))
            return None

        resolver = executor.resolver
        if context.credentials is not None:
            username = context.credentials.username
            password = context.credentials.password
        else:
            username = resolver.resolve_source(step.credentials.username.source)
            password = resolver.resolve_source(step.credentials.password.source)
        if not username or not password:
            raise StepExecutionError(step.id, "no credentials available")

        await executor.fill_field(step.credentials.username, username)
        await executor.fill_field(step.credentials.password, password)
        await executor.click(step.submit_selector)
        await executor.wait_for(step.success_indicator)
        return None


class NavigationHandler(StepHandler):
    async def run(self, step: NavigationStep, context, executor):
        capability = context.capabilities.get(step.id)
        if isinstance(capability, NavigationCapability):
            await maybe_await(capability.execute(context.session))
            return None
        await executor.run_all(step.actions)
        return None


class FormFillHandler(StepHandler):
    async def run(self, step: FormFillStep, context, executor):
        await executor.run_all(step.before_fill)

        filled = 0
        for field in step.fields:
            value = executor.resolver.resolve_source(field.source)
            if field.transform:
                value = apply_transforms(value, field.transform)
            if value is None or value == "":
                if field.optional:
                    logger.debug(f"Skipping empty optional field {field.id}")
                    continue
            await executor.fill_field(field, value)
            filled += 1

        if step.submit_selector is not None:
            await executor.click(step.submit_selector)
        await executor.run_all(step.after_fill)

        capability = context.capabilities.get(step.id)
        if isinstance(capability, FormFillCapability):
            errors = await maybe_await(capability.check_for_errors(context.session))
            if errors:
                raise StepExecutionError(step.id, "form reported errors: " + "; ".join(errors))

        logger.debug(f"Filled {filled}/{len(step.fields)} fields in {step.id}")
        return None


class ExtractionHandler(StepHandler):
    async def run(self, step: ExtractionStep, context, executor):
        extracted: dict[str, Any] = {}
        for extraction in step.extractions:
            value = await executor.read(extraction.selector, extraction.attribute)
            if extraction.transform:
                value = apply_transforms(value, extraction.transform)
            extracted[extraction.into] = value
        return extracted


class RegisteredStepHandler(StepHandler):
    """Adapter for an implementation taken from the step registry."""

    def __init__(self, impl: Any):
        self.impl = impl

    async def run(self, step: CustomStep, context, executor):
        # declarative actions run before the implementation
        await executor.run_all(step.actions)
        result = await invoke_step(self.impl, context, step)
        if result is None:
            return None
        if not isinstance(result, dict):
            logger.debug(f"Ignoring non-mapping result from custom step {step.id}")
            return None
        return result


BUILTIN_HANDLERS: dict[str, StepHandler] = {
    "auth": AuthHandler(),
    "navigation": NavigationHandler(),
    "form-fill": FormFillHandler(),
    "extraction": ExtractionHandler(),
}
