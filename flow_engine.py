"""
Flow execution engine.

Runs the steps of a flow definition in order against a browser session:
conditions, per-step timeouts, retry with exponential backoff, error
screenshots, hooks, events and optional pause/resume checkpoints.

    engine = FlowEngine(registry=my_registry)
    result = await engine.execute(flow, ExecutionContext(session=page, input=lead))
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Union

import flow_config
from flow_actions import BUILTIN_HANDLERS, ActionExecutor, RegisteredStepHandler, StepHandler, maybe_await
from flow_context import ExecutionContext, FlowResult, StepResult, StepStatus
from flow_errors import (
    ConfigurationError,
    EngineStateError,
    FlowError,
    InvalidFlowError,
    StepExecutionError,
    StepTimeoutError,
)
from flow_expressions import ExpressionResolver, evaluate_condition, set_path
from flow_logger import FlowLogger, capture_error_screenshot
from flow_models import FlowConfig, FlowDefinition, RetryPolicy
from flow_serializer import FlowLibrary, parse_flow
from flow_transforms import apply_mapper
from flow_validator import ValidationIssue, split_issues, validate
from persistence.execution_state import ExecutionState, ExecutionStateStore, ExecutionStatus, get_default_state_store
from step_registry import StepRegistry, default_registry

logger = logging.getLogger(__name__)

FLOW_EVENTS = (
    "flow:start",
    "step:start",
    "step:completed",
    "step:error",
    "step:skipped",
    "step:retry",
    "flow:paused",
    "flow:completed",
    "flow:error",
)

FlowSource = Union[FlowDefinition, Mapping[str, Any], str]


class FlowHooks:
    """Base class for engine hooks. Override the callbacks you need."""

    async def on_retry(self, context: ExecutionContext, step: Any, attempt: int) -> None:
        pass

    async def on_error(self, context: ExecutionContext, error: BaseException, step: Any) -> None:
        pass


def _first_set(*values: Optional[bool]) -> bool:
    for value in values:
        if value is not None:
            return value
    return False


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class FlowEngine:
    def __init__(
        self,
        registry: Optional[StepRegistry] = None,
        state_store: Optional[ExecutionStateStore] = None,
        hooks: Iterable[FlowHooks] = (),
        library: Optional[FlowLibrary] = None,
        default_timeout_ms: int = flow_config.DEFAULT_STEP_TIMEOUT_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry if registry is not None else default_registry
        self._state_store = state_store
        self.hooks: list[FlowHooks] = list(hooks)
        self.library = library
        self.default_timeout_ms = default_timeout_ms
        self._sleep = sleep
        self._listeners: dict[str, list[Callable]] = defaultdict(list)

        self._active_id: Optional[str] = None
        self._pause_enabled = False
        self._pause_requested = False
        self._stop_requested = False

    @property
    def state_store(self) -> ExecutionStateStore:
        if self._state_store is None:
            self._state_store = get_default_state_store()
        return self._state_store

    @property
    def active_execution_id(self) -> Optional[str]:
        return self._active_id

    # --- Hooks and events ---

    def add_hooks(self, hooks: FlowHooks) -> None:
        self.hooks.append(hooks)

    def on(self, event: str, handler: Callable[[dict[str, Any]], Any]) -> None:
        if event not in FLOW_EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._listeners[event].append(handler)

    def off(self, event: str, handler: Callable) -> None:
        if handler in self._listeners.get(event, []):
            self._listeners[event].remove(handler)

    async def _emit(self, event: str, data: dict[str, Any]) -> None:
        for handler in list(self._listeners.get(event, [])):
            try:
                await maybe_await(handler(data))
            except Exception as e:
                logger.warning(f"Listener for {event} failed: {e}")

    async def _call_hooks(self, name: str, *args: Any) -> None:
        for hooks in self.hooks:
            callback = getattr(hooks, name, None)
            if callback is None:
                continue
            try:
                await maybe_await(callback(*args))
            except Exception as e:
                logger.warning(f"Hook {type(hooks).__name__}.{name} failed: {e}")

    # --- Control ---

    def pause(self) -> None:
        """Stop scheduling new steps once the current one settles. Needs pause/resume enabled."""
        if self._active_id is None:
            raise EngineStateError("No active execution to pause")
        if not self._pause_enabled:
            raise EngineStateError("Pause/resume is not enabled for this execution")
        self._pause_requested = True

    def stop(self) -> bool:
        """Abort the active execution after the current step settles."""
        if self._active_id is None:
            return False
        self._stop_requested = True
        return True

    # --- Loading ---

    def _load(self, flow: FlowSource) -> tuple[FlowDefinition, list[ValidationIssue]]:
        if isinstance(flow, FlowDefinition):
            definition = flow
        elif isinstance(flow, Mapping):
            errors, _ = split_issues(validate(flow))
            if errors:
                raise InvalidFlowError(f"Invalid flow: {errors[0].path}: {errors[0].message}", errors)
            try:
                definition = FlowDefinition.model_validate(dict(flow))
            except ValueError as e:
                raise InvalidFlowError(f"Invalid flow: {e}") from e
        elif isinstance(flow, str):
            if self.library is not None and "\n" not in flow and self.library.has(flow):
                definition = self.library.get(flow)
            else:
                parsed = parse_flow(flow)
                if not parsed.valid:
                    first = parsed.errors[0]
                    raise InvalidFlowError(f"Invalid flow: {first.path}: {first.message}", parsed.errors)
                definition = parsed.flow
        else:
            raise ConfigurationError(f"Cannot load a flow from {type(flow).__name__}")

        errors, warnings = split_issues(validate(definition))
        if errors:
            raise InvalidFlowError(
                f"Flow '{definition.flow_key}' has {len(errors)} validation error(s): "
                f"{errors[0].path}: {errors[0].message}",
                errors,
            )
        return definition, warnings

    # --- Execution ---

    async def execute(self, flow: FlowSource, context: ExecutionContext) -> FlowResult:
        """
        Run a flow from its first step.

        Args:
            flow: FlowDefinition, raw mapping, flow text, or a key known to the library
            context: Session, input payload, credentials and flags

        Returns:
            FlowResult; step failures never raise

        Raises:
            InvalidFlowError: If the definition has validation errors
            ConfigurationError: Unknown custom step, bad condition, unknown action
            EngineStateError: If this engine is already running a flow
        """
        definition, warnings = self._load(flow)
        return await self._run(definition, context, warnings)

    async def resume(self, state_id: str, flow: FlowSource, context: ExecutionContext) -> FlowResult:
        """Continue a paused execution after its last completed step."""
        state = self.state_store.get_state(state_id)
        if state is None:
            raise EngineStateError(f"Unknown execution id: {state_id}")
        if state.status != ExecutionStatus.PAUSED:
            raise EngineStateError(f"Cannot resume flow with status: {state.status.value}")

        definition, warnings = self._load(flow)
        if state.flow_key != definition.flow_key:
            raise EngineStateError(
                f"Execution {state_id} belongs to flow '{state.flow_key}', not '{definition.flow_key}'")

        start_index = 0
        if state.last_completed_step_id:
            index = definition.step_index(state.last_completed_step_id)
            if index is None:
                raise EngineStateError(
                    f"Step '{state.last_completed_step_id}' no longer exists in flow '{definition.flow_key}'")
            start_index = index + 1

        snapshot = state.context_snapshot or {}
        mapped_input = None if context.input else dict(snapshot.get("input") or {})
        for key, value in (snapshot.get("vars") or {}).items():
            context.vars.setdefault(key, value)
        context = dataclasses.replace(
            context, flags=dataclasses.replace(context.flags, enable_pause_resume=True))

        return await self._run(
            definition, context, warnings,
            resume_state=state, start_index=start_index, mapped_input=mapped_input,
        )

    async def _run(
        self,
        flow: FlowDefinition,
        context: ExecutionContext,
        warnings: list[ValidationIssue],
        resume_state: Optional[ExecutionState] = None,
        start_index: int = 0,
        mapped_input: Optional[dict[str, Any]] = None,
    ) -> FlowResult:
        if self._active_id is not None:
            raise EngineStateError(f"Engine is already running execution {self._active_id}")

        execution_id = resume_state.id if resume_state else str(uuid.uuid4())
        self._active_id = execution_id
        self._pause_enabled = context.flags.enable_pause_resume
        self._pause_requested = False
        self._stop_requested = False
        try:
            if mapped_input is None:
                mapped_input = apply_mapper(flow.input_mapper, context.input)
            context = dataclasses.replace(context, input=mapped_input)
            return await self._run_steps(flow, context, warnings, execution_id, resume_state, start_index)
        finally:
            self._active_id = None
            self._pause_enabled = False
            self._pause_requested = False
            self._stop_requested = False

    async def _run_steps(
        self,
        flow: FlowDefinition,
        context: ExecutionContext,
        warnings: list[ValidationIssue],
        execution_id: str,
        resume_state: Optional[ExecutionState],
        start_index: int,
    ) -> FlowResult:
        config = flow.config or FlowConfig()
        flags = context.flags
        stop_on_error = _first_set(flags.stop_on_error, config.stop_on_error, flow_config.STOP_ON_ERROR)
        screenshot_on_error = _first_set(
            flags.screenshot_on_error, config.screenshot_on_error, flow_config.SCREENSHOT_ON_ERROR)
        log = FlowLogger(flow.flow_key, execution_id, verbose=flags.verbose or bool(config.debug))
        for issue in warnings:
            log.warning(f"Validation warning at {issue.path}: {issue.message}")

        store = self.state_store if flags.enable_pause_resume else None
        state_id = None
        if store is not None:
            if resume_state is not None:
                state_id = store.mark_running(resume_state.id).id
            else:
                state_id = store.create_state(flow.flow_key, context.snapshot(), state_id=execution_id).id

        results: list[StepResult] = []
        first_error: Optional[BaseException] = None
        paused = False

        log.info(f"Starting flow {flow.flow_key}", steps=len(flow.steps), startIndex=start_index or None)
        await self._emit("flow:start", {"flowKey": flow.flow_key, "executionId": execution_id})

        try:
            for index, step in enumerate(flow.steps):
                if index < start_index:
                    continue
                if self._stop_requested:
                    first_error = first_error or FlowError(f"Execution stopped before step '{step.id}'")
                    log.warning(f"Stop requested, not running {step.id}")
                    break
                if self._pause_requested:
                    paused = True
                    log.info(f"Pause requested, stopping before {step.id}")
                    break

                skip_reason = self._skip_reason(step, context)
                if skip_reason:
                    results.append(StepResult(step.id, StepStatus.CANCELLED, skip_reason=skip_reason))
                    log.info(f"Skipping step {step.id}: {skip_reason}", stepId=step.id)
                    await self._emit("step:skipped", {
                        "flowKey": flow.flow_key, "stepId": step.id, "reason": skip_reason})
                    continue

                await self._emit("step:start", {
                    "flowKey": flow.flow_key, "stepId": step.id, "stepName": step.name,
                    "status": StepStatus.RUNNING.value,
                })
                result = await self._execute_step(step, context, config, log)
                results.append(result)

                if result.status == StepStatus.COMPLETED:
                    for path, value in result.output.items():
                        set_path(context.vars, path, value)
                    if store is not None:
                        store.checkpoint(state_id, index, step.id, context.snapshot())
                    log.info(f"Step {step.id} completed in {result.duration_ms}ms", stepId=step.id)
                    await self._emit("step:completed", {
                        "flowKey": flow.flow_key, "stepId": step.id, "stepName": step.name,
                        "durationMs": result.duration_ms, "output": result.output,
                    })
                    continue

                await self._handle_failure(step, result, context, config, log, screenshot_on_error)
                if step.optional:
                    log.warning(f"Optional step {step.id} failed, continuing", stepId=step.id)
                    continue
                first_error = first_error or result.error
                if stop_on_error:
                    log.error(f"Stopping flow after failed step {step.id}")
                    break
        except ConfigurationError as e:
            log.error("Flow aborted by configuration error", error=e)
            if store is not None:
                store.mark_failed(state_id, str(e))
            await self._emit("flow:error", {"flowKey": flow.flow_key, "executionId": execution_id, "error": e})
            raise

        failed = [r for r in results if r.status == StepStatus.FAILED and not self._is_optional(flow, r.step_id)]
        success = not failed and first_error is None and not paused
        total_duration = sum(r.duration_ms for r in results)

        output: dict[str, Any] = {}
        if not paused:
            try:
                output = apply_mapper(flow.output_mapper, context.vars)
            except ConfigurationError as e:
                log.error("Output mapping failed", error=e)
                first_error = first_error or e
                success = False

        if paused:
            if store is not None:
                store.mark_paused(state_id)
            log.info(f"Flow {flow.flow_key} paused", stateId=state_id)
            await self._emit("flow:paused", {"flowKey": flow.flow_key, "executionId": execution_id, "stateId": state_id})
        elif success:
            if store is not None:
                store.mark_completed(state_id)
            log.info(f"Flow {flow.flow_key} completed in {total_duration}ms")
            await self._emit("flow:completed", {
                "flowKey": flow.flow_key, "executionId": execution_id, "totalDuration": total_duration})
        else:
            if store is not None:
                store.mark_failed(state_id, str(first_error) if first_error else None)
            log.error(f"Flow {flow.flow_key} failed", error=first_error)
            await self._emit("flow:error", {
                "flowKey": flow.flow_key, "executionId": execution_id, "error": first_error})

        return FlowResult(
            success=success,
            flow_key=flow.flow_key,
            execution_id=execution_id,
            steps_executed=sum(1 for r in results if r.status != StepStatus.CANCELLED),
            step_results=results,
            total_duration=total_duration,
            error=first_error,
            state_id=state_id,
            logs=log.to_list(),
            paused=paused,
            output=output,
        )

    @staticmethod
    def _is_optional(flow: FlowDefinition, step_id: str) -> bool:
        index = flow.step_index(step_id)
        return index is not None and bool(flow.steps[index].optional)

    def _skip_reason(self, step: Any, context: ExecutionContext) -> Optional[str]:
        if context.flags.skip_auth and step.type == "auth":
            return "skip_auth"
        if step.condition and not evaluate_condition(step.condition, ExpressionResolver.for_context(context)):
            return f"condition not met: {step.condition}"
        return None

    def _resolve_handler(self, step: Any) -> StepHandler:
        if step.type == "custom":
            return RegisteredStepHandler(self.registry.get(step.registry_key))
        handler = BUILTIN_HANDLERS.get(step.type)
        if handler is None:
            raise ConfigurationError(f"Unknown step type: {step.type}")
        return handler

    def _retry_policy(self, step: Any, config: FlowConfig) -> RetryPolicy:
        if step.retry is not None:
            return step.retry
        if config.max_retries:
            return RetryPolicy(
                max_attempts=config.max_retries + 1,
                delay_ms=config.retry_delay if config.retry_delay is not None else flow_config.DEFAULT_RETRY_DELAY_MS,
            )
        return RetryPolicy(max_attempts=1)

    def _backoff_ms(self, policy: RetryPolicy, attempt: int) -> int:
        delay = policy.delay_for(attempt)
        if flow_config.MAX_RETRY_DELAY_MS:
            delay = min(delay, flow_config.MAX_RETRY_DELAY_MS)
        return delay

    async def _execute_step(self, step: Any, context: ExecutionContext, config: FlowConfig, log: FlowLogger) -> StepResult:
        """Run one step with timeout and retries. Only ConfigurationError escapes."""
        handler = self._resolve_handler(step)
        policy = self._retry_policy(step, config)
        timeout_ms = step.timeout or config.default_timeout or self.default_timeout_ms
        executor = ActionExecutor(context.session, ExpressionResolver.for_context(context), timeout_ms)
        step_log = log.bind(stepId=step.id)
        started = time.monotonic()

        attempt = 1
        while True:
            step_log.debug(f"Running {step.type} step {step.name or step.id} (attempt {attempt}/{policy.max_attempts})")
            try:
                output = await self._attempt(handler, step, context, executor, timeout_ms)
            except ConfigurationError:
                raise
            except Exception as exc:
                error = exc if isinstance(exc, StepExecutionError) else StepExecutionError(step.id, exc)
                if attempt >= policy.max_attempts or self._stop_requested:
                    return StepResult(
                        step.id, StepStatus.FAILED,
                        duration_ms=_elapsed_ms(started), error=error, attempts=attempt,
                    )
                delay_ms = self._backoff_ms(policy, attempt)
                step_log.warning(
                    f"Attempt {attempt}/{policy.max_attempts} failed: {error}; retrying in {delay_ms}ms")
                await self._emit("step:retry", {
                    "stepId": step.id, "attempt": attempt + 1, "delayMs": delay_ms, "error": error})
                await self._call_hooks("on_retry", context, step, attempt + 1)
                await self._sleep(delay_ms / 1000)
                attempt += 1
                continue

            return StepResult(
                step.id, StepStatus.COMPLETED,
                duration_ms=_elapsed_ms(started), attempts=attempt, output=dict(output or {}),
            )

    async def _attempt(self, handler: StepHandler, step: Any, context: ExecutionContext,
                       executor: ActionExecutor, timeout_ms: int) -> Optional[dict[str, Any]]:
        task = asyncio.ensure_future(handler.run(step, context, executor))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()
        # Timed out: cancel and wait for the step to settle before moving on
        task.cancel()
        await asyncio.wait({task})
        raise StepTimeoutError(step.id, timeout_ms)

    async def _handle_failure(self, step: Any, result: StepResult, context: ExecutionContext,
                              config: FlowConfig, log: FlowLogger, screenshot_on_error: bool) -> None:
        await self._call_hooks("on_error", context, result.error, step)
        await self._emit("step:error", {
            "stepId": step.id, "stepName": step.name, "error": result.error, "attempts": result.attempts})
        if screenshot_on_error:
            directory = context.artifacts_dir or config.screenshots_dir or flow_config.ARTIFACTS_DIR
            result.screenshot = await capture_error_screenshot(context.session, directory, step.id)
        log.error(
            f"Step {step.id} failed after {result.attempts} attempt(s)",
            error=result.error, stepId=step.id, screenshot=result.screenshot,
        )
