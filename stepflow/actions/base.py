"""Action boundary: the contract every step implementation fulfils."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from ..contracts import StepError, StepExecutionResult, WorkflowContext
from ..errors import ErrorKind


class ActionInput(BaseModel):
    """Everything an action receives for one invocation."""

    context: WorkflowContext
    config: Dict[str, Any] = Field(default_factory=dict)
    instructions: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)

    @property
    def message(self) -> str:
        return "; ".join(self.errors) or "Input validation failed"


@runtime_checkable
class Action(Protocol):
    """Protocol for step implementations.

    ``validate`` and ``cleanup`` are optional; the dispatcher only calls them
    when the action defines them.
    """

    name: str

    async def execute(self, input: ActionInput) -> StepExecutionResult | Any:
        """Run the action and return a result or a plain output value."""


class BaseAction:
    """Convenience base class with default validation and result helpers."""

    name: str = ""
    description: Optional[str] = None

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        self.config = config or {}

    async def execute(self, input: ActionInput) -> StepExecutionResult | Any:
        raise NotImplementedError

    async def validate(self, input: ActionInput) -> ValidationResult:
        errors: List[str] = []
        if not input.context.workflow_id:
            errors.append("Context workflow_id is required")
        errors.extend(await self.custom_validation(input))
        return ValidationResult(valid=not errors, errors=errors)

    async def custom_validation(self, input: ActionInput) -> List[str]:
        """Override to add action specific validation errors."""
        return []

    async def cleanup(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Helpers
    @staticmethod
    def previous_output(input: ActionInput, step_id: str) -> Any:
        return input.context.outputs.get(step_id)

    @staticmethod
    def success(output: Any = None, **metadata: Any) -> StepExecutionResult:
        return StepExecutionResult(success=True, output=output, metadata=metadata)

    @staticmethod
    def failure(
        message: str,
        kind: ErrorKind = ErrorKind.EXECUTION_ERROR,
        retryable: Optional[bool] = None,
    ) -> StepExecutionResult:
        return StepExecutionResult.failure(StepError.of(kind, message, retryable))


class FunctionAction(BaseAction):
    """Wrap a plain function (sync or async) as an action.

    Sync functions run in a worker thread so they do not block the batch.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[ActionInput], Any | Awaitable[Any]],
        description: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.name = name
        self.description = description or inspect.getdoc(func)
        self._func = func

    async def execute(self, input: ActionInput) -> StepExecutionResult | Any:
        if inspect.iscoroutinefunction(self._func):
            return await self._func(input)
        result = await asyncio.to_thread(self._func, input)
        if inspect.isawaitable(result):
            result = await result
        return result
