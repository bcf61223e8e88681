"""Invocation of a single workflow step against the action boundary."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from typing import Any, Optional, Tuple

from .actions import ActionInput, ActionRegistry, ValidationResult
from .contracts import StepError, StepExecutionResult, WorkflowContext, WorkflowDefinition
from .errors import ActionFailed, ErrorKind
from .utils.retry import sleep_ms

logger = logging.getLogger(__name__)


class StepDispatcher:
    """Runs one step: looks up its action, validates, executes, cleans up.

    Every failure is returned as a :class:`StepExecutionResult` carrying a
    :class:`StepError`; nothing raised by an action escapes ``run_step``.
    The action works on a private copy of ``context`` and its output is
    copied before it is handed back, so no live reference crosses the
    boundary in either direction.
    """

    def __init__(self, registry: ActionRegistry) -> None:
        self._registry = registry

    async def run_step(
        self,
        definition: WorkflowDefinition,
        step_id: str,
        context: WorkflowContext,
        instructions: Optional[str] = None,
        delay_ms: int = 0,
        attempt: int = 0,
    ) -> StepExecutionResult:
        step = definition.get_step(step_id)
        if step is None:
            return self._fail(
                step_id, StepError.of(ErrorKind.STEP_NOT_FOUND, f"Step not found: {step_id}")
            )

        action = self._registry.get(step.action_name)
        if action is None:
            return self._fail(
                step_id,
                StepError.of(
                    ErrorKind.ACTION_NOT_FOUND, f"Action not found: {step.action_name}"
                ),
            )

        try:
            snapshot = context.model_copy(deep=True)
        except Exception as exc:
            logger.error(f"Context for step {step_id} cannot be copied: {exc}")
            return self._fail(
                step_id,
                StepError.of(
                    ErrorKind.EXECUTION_ERROR,
                    f"Context for step {step_id} cannot be copied: {exc}",
                    retryable=False,
                ),
            )

        if delay_ms > 0:
            logger.debug(f"Step {step_id} sleeping {delay_ms}ms before attempt {attempt}")
            await sleep_ms(delay_ms)

        action_input = ActionInput(
            context=snapshot,
            config=dict(step.config),
            instructions=instructions,
            metadata={"step_id": step_id, "attempt": attempt},
        )

        started = time.monotonic()
        try:
            validate = getattr(action, "validate", None)
            if validate is not None:
                validation = _as_validation(await validate(action_input))
                if not validation.valid:
                    return self._fail(
                        step_id,
                        StepError.of(
                            ErrorKind.VALIDATION_ERROR,
                            f"Validation failed for step {step_id}",
                            validation_message=validation.message,
                        ),
                    )

            coro = action.execute(action_input)
            if step.timeout_ms:
                raw = await asyncio.wait_for(coro, timeout=step.timeout_ms / 1000)
            else:
                raw = await coro
        except asyncio.TimeoutError as exc:
            if not step.timeout_ms:
                # raised by the action itself, not by wait_for
                return self._raised(step_id, exc)
            return self._fail(
                step_id,
                StepError.of(
                    ErrorKind.TIMEOUT, f"Step {step_id} timed out after {step.timeout_ms}ms"
                ),
            )
        except ActionFailed as exc:
            return self._fail(step_id, StepError.of(exc.kind, exc.message, exc.retryable))
        except Exception as exc:
            return self._raised(step_id, exc)
        finally:
            await self._cleanup(action, step_id)

        result, problem = _detach(_as_result(raw))
        if problem is not None:
            logger.error(f"Output of step {step_id} cannot be copied: {problem}")
            return self._fail(
                step_id,
                StepError.of(
                    ErrorKind.EXECUTION_ERROR,
                    f"Output of step {step_id} cannot be copied: {problem}",
                    retryable=False,
                ),
            )
        if result.error is not None and result.error.step_id is None:
            result.error = result.error.model_copy(update={"step_id": step_id})
        if not result.success and result.error is None:
            result.error = StepError.of(
                ErrorKind.EXECUTION_ERROR, f"Step {step_id} reported failure", step_id=step_id
            )
        result.metadata.setdefault("duration_ms", int((time.monotonic() - started) * 1000))
        return result

    @staticmethod
    def _fail(step_id: str, error: StepError) -> StepExecutionResult:
        return StepExecutionResult.failure(error.model_copy(update={"step_id": step_id}))

    @classmethod
    def _raised(cls, step_id: str, exc: Exception) -> StepExecutionResult:
        logger.error(f"Step {step_id} raised {type(exc).__name__}: {exc}")
        return cls._fail(
            step_id, StepError.of(ErrorKind.EXECUTION_ERROR, str(exc) or type(exc).__name__)
        )

    @staticmethod
    async def _cleanup(action: Any, step_id: str) -> None:
        cleanup = getattr(action, "cleanup", None)
        if cleanup is None:
            return
        try:
            await cleanup()
        except Exception as exc:
            logger.error(f"Cleanup for step {step_id} failed: {exc}")


def _as_result(raw: Any) -> StepExecutionResult:
    if isinstance(raw, StepExecutionResult):
        return raw
    return StepExecutionResult(success=True, output=raw)


def _detach(result: StepExecutionResult) -> Tuple[StepExecutionResult, Optional[Exception]]:
    """Copy the values a result writes back into the workflow context."""
    if not result.success:
        return result, None
    try:
        output = copy.deepcopy(result.output)
        shared_state = copy.deepcopy(result.shared_state)
    except Exception as exc:
        return result, exc
    return result.model_copy(update={"output": output, "shared_state": shared_state}), None


def _as_validation(raw: Any) -> ValidationResult:
    if isinstance(raw, ValidationResult):
        return raw
    if isinstance(raw, bool):
        return ValidationResult(valid=raw)
    if isinstance(raw, dict):
        return ValidationResult.model_validate(raw)
    return ValidationResult(valid=bool(raw))
