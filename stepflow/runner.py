"""Execution loop driving workflows to completion."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Set, Union

from .actions import REGISTRY, ActionRegistry
from .config import StepflowConfig, load_config
from .contracts import (
    Decision,
    DecisionAction,
    ExecutionMetadata,
    ExecutionResult,
    ResumeRequest,
    StepError,
    StepExecutionResult,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    utc_now,
)
from .dispatch import StepDispatcher
from .errors import (
    ErrorKind,
    PersistenceNotConfigured,
    WorkflowExecutionError,
    WorkflowNotResumable,
    WorkflowStateNotFound,
)
from .orchestrator import Orchestrator
from .persistence import StatePersistence, get_persistence
from .policies import RetryPolicy

logger = logging.getLogger(__name__)

ContextInput = Union[WorkflowContext, Dict[str, Any], None]

_HISTORY_STATUS = {
    ErrorKind.VALIDATION_ERROR.value: WorkflowStatus.VALIDATION_FAILED,
    ErrorKind.TIMEOUT.value: WorkflowStatus.TIMED_OUT,
}


class _RunStats:
    def __init__(self) -> None:
        self.steps_executed = 0
        self.retries_performed = 0


class WorkflowRunner:
    """Runs workflows by alternating orchestrator decisions and step batches.

    Each batch is a wavefront of independent steps dispatched concurrently.
    Results are written back only once the whole batch has returned, so steps
    never observe each other's in-flight outputs.
    """

    def __init__(
        self,
        registry: Optional[ActionRegistry] = None,
        persistence: Optional[StatePersistence] = None,
        config: Optional[StepflowConfig] = None,
        orchestrator: Optional[Orchestrator] = None,
    ) -> None:
        self.config = config or load_config()
        self.registry = registry if registry is not None else REGISTRY
        if persistence is None and self.config.runner.persist_state:
            persistence = get_persistence(config=self.config)
        self.persistence = persistence
        self.orchestrator = orchestrator or Orchestrator(
            retry_policy=RetryPolicy(self.config.retry.base_delay_ms),
            max_validation_repairs=self.config.retry.max_validation_repairs,
        )
        self.dispatcher = StepDispatcher(self.registry)
        self._signals: Dict[str, WorkflowStatus] = {}
        self._active: Set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    async def execute(
        self,
        definition: WorkflowDefinition,
        initial_context: ContextInput = None,
        workflow_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Start a new instance of ``definition`` and run it until it stops."""
        context = _build_context(initial_context, workflow_id)
        state = WorkflowState.create(context.workflow_id, context)
        logger.info(f"Starting workflow {definition.id} as {state.workflow_id}")
        await self._persist(state)
        return await self._run(definition, state)

    async def resume(
        self,
        workflow_id: str,
        definition: WorkflowDefinition,
        updates: Union[ResumeRequest, Dict[str, Any], None] = None,
    ) -> ExecutionResult:
        """Reload a suspended workflow, apply ``updates`` and continue it."""
        state = await self._load(workflow_id)
        if state.is_terminal:
            raise WorkflowNotResumable(workflow_id, state.status.value)

        if isinstance(updates, dict):
            updates = ResumeRequest.model_validate(updates)
        if updates is not None:
            updates.apply(state)

        _reopen(state)
        logger.info(f"Resuming workflow {workflow_id} from status {state.status.value}")
        await self._persist(state)
        return await self._run(definition, state)

    async def pause(self, workflow_id: str) -> Optional[WorkflowState]:
        """Request a pause; returns the updated state if it was not running."""
        return await self._signal(workflow_id, WorkflowStatus.PAUSED)

    async def cancel(self, workflow_id: str) -> Optional[WorkflowState]:
        """Request cancellation; returns the updated state if it was not running."""
        return await self._signal(workflow_id, WorkflowStatus.CANCELED)

    # ------------------------------------------------------------------
    # Loop
    async def _run(self, definition: WorkflowDefinition, state: WorkflowState) -> ExecutionResult:
        workflow_id = state.workflow_id
        started_at = utc_now()
        started = time.monotonic()
        stats = _RunStats()
        limit_ms = self.config.runner.max_execution_time_ms

        self._active.add(workflow_id)
        try:
            while True:
                elapsed_ms = (time.monotonic() - started) * 1000
                if elapsed_ms > limit_ms:
                    _time_out(state, limit_ms)
                    break

                signal = self._signals.pop(workflow_id, None)
                if signal is not None:
                    _apply_signal(state, signal)

                decision = self.orchestrator.decide(state, definition)
                state = decision.updated_state

                if decision.action == DecisionAction.TERMINATE:
                    logger.info(f"Workflow {workflow_id} finished with status {state.status.value}")
                    break
                if not decision.runs_steps:
                    logger.info(f"Workflow {workflow_id} waiting in status {state.status.value}")
                    break

                await self._persist(state)
                state = await self._run_batch(definition, decision, state, stats)
                await self._persist(state)
        except Exception as exc:
            logger.exception(f"Workflow {workflow_id} execution loop failed")
            raise WorkflowExecutionError(workflow_id, str(exc)) from exc
        finally:
            self._active.discard(workflow_id)

        await self._persist(state)
        return _result(state, started_at, started, stats)

    async def _run_batch(
        self,
        definition: WorkflowDefinition,
        decision: Decision,
        state: WorkflowState,
        stats: _RunStats,
    ) -> WorkflowState:
        step_ids = decision.step_ids
        attempts = {sid: _attempt_number(state, sid) for sid in step_ids}
        logger.info(f"Workflow {state.workflow_id} dispatching {step_ids}")

        results: List[StepExecutionResult] = await asyncio.gather(
            *(
                self.dispatcher.run_step(
                    definition,
                    step_id,
                    state.context,
                    instructions=decision.instructions.get(step_id),
                    delay_ms=decision.delays_ms.get(step_id, 0),
                    attempt=attempts[step_id],
                )
                for step_id in step_ids
            )
        )

        failures: Dict[str, StepError] = {}
        for step_id, result in zip(step_ids, results):
            stats.steps_executed += 1
            notes = _history_notes(state, decision, step_id, attempts[step_id], result)
            if result.success:
                state.context.outputs[step_id] = result.output
                if result.shared_state:
                    state.context.shared_state.update(result.shared_state)
                state.append_history(step_id, WorkflowStatus.SUCCESS, notes=notes)
            else:
                error = result.error
                failures[step_id] = error
                status = _HISTORY_STATUS.get(error.type, WorkflowStatus.FAILED)
                state.append_history(step_id, status, notes=notes, error=error)
                logger.warning(
                    f"Step {step_id} of {state.workflow_id} failed ({error.type}): {error.message}"
                )
            if step_id in state.running_step_ids:
                state.running_step_ids.remove(step_id)
        stats.retries_performed += len(decision.retries)

        state.failed_steps = failures
        if not failures:
            state.status = WorkflowStatus.SUCCESS
        else:
            if all(e.type == ErrorKind.VALIDATION_ERROR.value for e in failures.values()):
                state.status = WorkflowStatus.VALIDATION_FAILED
            else:
                state.status = WorkflowStatus.FAILED
            state.last_error = next(iter(failures.values()))
        return state

    # ------------------------------------------------------------------
    # Persistence and control helpers
    async def _persist(self, state: WorkflowState) -> None:
        if self.persistence is None:
            return
        try:
            await self.persistence.save(state.workflow_id, state)
        except Exception as exc:
            logger.error(f"Failed to persist state for {state.workflow_id}: {exc}")

    async def _load(self, workflow_id: str) -> WorkflowState:
        if self.persistence is None:
            raise PersistenceNotConfigured("State persistence is required to resume workflows")
        state = await self.persistence.load(workflow_id)
        if state is None:
            raise WorkflowStateNotFound(workflow_id)
        return state

    async def _signal(self, workflow_id: str, signal: WorkflowStatus) -> Optional[WorkflowState]:
        if workflow_id in self._active:
            logger.info(f"Queued {signal.value} request for running workflow {workflow_id}")
            self._signals[workflow_id] = signal
            return None

        state = await self._load(workflow_id)
        if state.is_terminal:
            logger.warning(
                f"Ignoring {signal.value} request for workflow {workflow_id} in status "
                f"{state.status.value}"
            )
            return state
        _apply_signal(state, signal)
        await self._persist(state)
        return state


def _build_context(initial_context: ContextInput, workflow_id: Optional[str]) -> WorkflowContext:
    if isinstance(initial_context, WorkflowContext):
        data = initial_context.model_dump()
    else:
        data = dict(initial_context or {})
    data["workflow_id"] = workflow_id or data.get("workflow_id") or str(uuid.uuid4())
    return WorkflowContext.model_validate(data)


def _attempt_number(state: WorkflowState, step_id: str) -> int:
    counter = state.retry_counter(step_id)
    return (counter.attempt if counter else 0) + 1


def _history_notes(
    state: WorkflowState,
    decision: Decision,
    step_id: str,
    attempt: int,
    result: StepExecutionResult,
) -> Dict[str, Any]:
    notes: Dict[str, Any] = {"attempt": attempt}
    if "duration_ms" in result.metadata:
        notes["duration_ms"] = result.metadata["duration_ms"]
    if step_id in decision.retries:
        notes["retry"] = True
    if step_id in decision.instructions:
        notes["instructions"] = decision.instructions[step_id]
    source = next((s for s, t in state.fallback_routes.items() if t == step_id), None)
    if source is not None:
        notes["fallback_for"] = source
    if step_id == state.active_handler:
        notes["handler"] = state.handler_route
    return notes


def _reopen(state: WorkflowState) -> None:
    """Flip a suspended status back to one the orchestrator schedules from."""
    if state.status == WorkflowStatus.PAUSED:
        state.status = state.paused_from or WorkflowStatus.SUCCESS
        state.paused_from = None
    if state.status == WorkflowStatus.PENDING_HUMAN_REVIEW:
        state.status = WorkflowStatus.SUCCESS
    elif state.status == WorkflowStatus.IN_PROGRESS:
        # interrupted mid-batch: the steps that never reported are run again
        state.blocked_step_ids = list(state.running_step_ids)
        state.running_step_ids = []
        state.status = WorkflowStatus.SUCCESS


def _apply_signal(state: WorkflowState, signal: WorkflowStatus) -> None:
    if signal == WorkflowStatus.CANCELED:
        logger.info(f"Canceling workflow {state.workflow_id}")
        state.status = WorkflowStatus.CANCELED
        state.running_step_ids = []
        state.completed_at = utc_now()
    elif signal == WorkflowStatus.PAUSED and state.status != WorkflowStatus.PAUSED:
        logger.info(f"Pausing workflow {state.workflow_id}")
        state.paused_from = state.status
        state.status = WorkflowStatus.PAUSED


def _time_out(state: WorkflowState, limit_ms: int) -> None:
    logger.error(f"Workflow {state.workflow_id} exceeded {limit_ms}ms and timed out")
    state.status = WorkflowStatus.TIMED_OUT
    state.last_error = StepError.of(
        ErrorKind.TIMEOUT, "Workflow execution timed out", retryable=False
    )
    state.failed_steps = {}
    state.running_step_ids = []
    state.completed_at = utc_now()


def _result(
    state: WorkflowState, started_at, started: float, stats: _RunStats
) -> ExecutionResult:
    success = state.status == WorkflowStatus.SUCCESS and state.completed_at is not None
    return ExecutionResult(
        success=success,
        state=state,
        error=None if success else state.last_error,
        metadata=ExecutionMetadata(
            started_at=started_at,
            completed_at=utc_now(),
            duration_ms=int((time.monotonic() - started) * 1000),
            steps_executed=stats.steps_executed,
            retries_performed=stats.retries_performed,
        ),
    )
