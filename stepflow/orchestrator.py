"""Pure decision engine for workflow execution.

The :class:`Orchestrator` looks at a :class:`WorkflowState` and the static
:class:`WorkflowDefinition` and returns a :class:`Decision`: run a set of
steps, WAIT, or TERMINATE. It performs no I/O and never mutates the state it
is given; every decision carries a new ``updated_state``.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from .constants import DEFAULT_BASE_DELAY_MS, DEFAULT_MAX_VALIDATION_REPAIRS
from .contracts import (
    FAILURE_STATUSES,
    Decision,
    RetryCounter,
    StepError,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    utc_now,
)
from .errors import ErrorKind
from .policies import FallbackResolver, RetryPolicy
from .resolver import DependencyResolver

logger = logging.getLogger(__name__)

HANDLER_SUCCESS = "success"
HANDLER_FAILURE = "failure"


class Orchestrator:
    """Maps ``(state, definition)`` to the next :class:`Decision`."""

    def __init__(
        self,
        resolver: Optional[DependencyResolver] = None,
        retry_policy: Optional[RetryPolicy] = None,
        fallback_resolver: Optional[FallbackResolver] = None,
        max_validation_repairs: int = DEFAULT_MAX_VALIDATION_REPAIRS,
        clock: Callable = utc_now,
    ) -> None:
        self.resolver = resolver or DependencyResolver()
        self.retry_policy = retry_policy or RetryPolicy(DEFAULT_BASE_DELAY_MS, clock=clock)
        self.fallback_resolver = fallback_resolver or FallbackResolver(self.retry_policy)
        self.max_validation_repairs = max_validation_repairs
        self._clock = clock

    def decide(self, state: WorkflowState, definition: WorkflowDefinition) -> Decision:
        """Return the next decision for ``state``."""
        current = state.model_copy(deep=True)
        status = current.status

        if current.is_terminal:
            return Decision.terminate(current)
        if status in (WorkflowStatus.PAUSED, WorkflowStatus.PENDING_HUMAN_REVIEW):
            return Decision.wait(current)
        if status == WorkflowStatus.IN_PROGRESS:
            return Decision.wait(current)
        if status == WorkflowStatus.PENDING:
            return self._handle_pending(current, definition)
        if status == WorkflowStatus.SUCCESS:
            return self._handle_success(current, definition)
        if status in FAILURE_STATUSES:
            return self._handle_failure(current, definition)
        return Decision.wait(current)

    # ------------------------------------------------------------------
    # State handlers
    def _handle_pending(
        self, state: WorkflowState, definition: WorkflowDefinition
    ) -> Decision:
        problems = self.resolver.validate(definition)
        runnable = [] if problems else self.resolver.find_runnable(definition, state)
        if not runnable:
            message = "; ".join(problems) or "No initial steps found in workflow"
            logger.error(f"Workflow {state.workflow_id} cannot start: {message}")
            state.status = WorkflowStatus.FAILED
            state.last_error = StepError.of(ErrorKind.CONFIGURATION_ERROR, message)
            state.completed_at = self._clock()
            return Decision.terminate(state)

        if state.started_at is None:
            state.started_at = self._clock()
        return self._run(state, definition, runnable)

    def _handle_success(
        self, state: WorkflowState, definition: WorkflowDefinition
    ) -> Decision:
        # a wavefront held back by a review gate is retried as-is
        if state.blocked_step_ids:
            return self._run(state, definition, list(state.blocked_step_ids))

        # siblings of a permanently failed step have all settled
        if state.unrecoverable_step_ids:
            return self._route_unrecoverable(
                state, definition, list(state.unrecoverable_step_ids)
            )

        if state.active_handler is not None:
            return self._finish_handler(state)

        runnable = self.resolver.find_runnable(definition, state)
        if runnable:
            return self._run(state, definition, runnable)

        if self.resolver.all_completed(definition, state):
            if definition.success_handler:
                state.active_handler = definition.success_handler
                state.handler_route = HANDLER_SUCCESS
                return self._run(state, definition, [definition.success_handler])
            state.status = WorkflowStatus.SUCCESS
            state.running_step_ids = []
            state.completed_at = self._clock()
            return Decision.terminate(state)

        logger.warning(
            f"Workflow {state.workflow_id} has no runnable steps but is not complete"
        )
        return Decision.wait(state)

    def _finish_handler(self, state: WorkflowState) -> Decision:
        if state.handler_route == HANDLER_SUCCESS:
            state.status = WorkflowStatus.SUCCESS
        else:
            state.status = WorkflowStatus.FAILED
        state.running_step_ids = []
        state.completed_at = self._clock()
        return Decision.terminate(state)

    def _handle_failure(
        self, state: WorkflowState, definition: WorkflowDefinition
    ) -> Decision:
        if not state.failed_steps and not state.unrecoverable_step_ids:
            if state.completed_at is None:
                state.completed_at = self._clock()
            return Decision.terminate(state)

        run_ids: List[str] = []
        delays: Dict[str, int] = {}
        instructions: Dict[str, str] = {}
        retries: List[str] = []
        unrecoverable: List[str] = []

        for step_id, error in state.failed_steps.items():
            step = definition.get_step(step_id)
            if step is None:
                unrecoverable.append(step_id)
                continue

            if error.type == ErrorKind.VALIDATION_ERROR.value and self._can_repair(state, step_id):
                counter = state.retry_state.get(step_id) or RetryCounter(
                    max_attempts=step.max_retries,
                    base_delay_ms=self.retry_policy.base_delay_for(step),
                )
                state.retry_state[step_id] = counter.model_copy(
                    update={"validation_repairs": counter.validation_repairs + 1}
                )
                instructions[step_id] = error.validation_message or error.message
                run_ids.append(step_id)
                continue

            if self.retry_policy.should_retry(state, step):
                counter, delay_ms = self.retry_policy.backoff(state, step)
                logger.info(
                    f"Retrying step {step_id} of {state.workflow_id} "
                    f"(attempt {counter.attempt}/{step.max_retries}) in {delay_ms}ms"
                )
                delays[step_id] = delay_ms
                retries.append(step_id)
                run_ids.append(step_id)
                continue

            fallback = self.fallback_resolver.resolve(state, step, definition)
            if fallback is not None:
                logger.info(f"Routing step {step_id} of {state.workflow_id} to fallback {fallback}")
                state.fallback_routes[step_id] = fallback
                run_ids.append(fallback)
                continue

            unrecoverable.append(step_id)

        state.failed_steps = {}
        for step_id in unrecoverable:
            if step_id not in state.unrecoverable_step_ids:
                state.unrecoverable_step_ids.append(step_id)
        if state.unrecoverable_step_ids:
            if not run_ids:
                return self._route_unrecoverable(
                    state, definition, list(state.unrecoverable_step_ids)
                )
            logger.warning(
                f"Steps {state.unrecoverable_step_ids} of {state.workflow_id} failed "
                f"permanently; routing deferred until {run_ids} settle"
            )

        decision = self._run(state, definition, run_ids)
        decision.delays_ms = {k: v for k, v in delays.items() if k in decision.step_ids}
        decision.delay_ms = max(decision.delays_ms.values(), default=0)
        decision.instructions = {k: v for k, v in instructions.items() if k in decision.step_ids}
        decision.retries = [s for s in retries if s in decision.step_ids]
        return decision

    def _route_unrecoverable(
        self,
        state: WorkflowState,
        definition: WorkflowDefinition,
        unrecoverable: List[str],
    ) -> Decision:
        state.unrecoverable_step_ids = []
        handler = definition.dead_letter_handler or definition.error_handler
        handler_failed = state.active_handler is not None and state.active_handler in unrecoverable
        if handler and state.handler_route != HANDLER_FAILURE and not handler_failed:
            logger.warning(
                f"Steps {unrecoverable} of {state.workflow_id} failed permanently; "
                f"routing to handler {handler}"
            )
            state.active_handler = handler
            state.handler_route = HANDLER_FAILURE
            return self._run(state, definition, [handler])

        logger.error(f"Workflow {state.workflow_id} failed at steps {unrecoverable}")
        state.status = WorkflowStatus.FAILED
        state.running_step_ids = []
        state.completed_at = self._clock()
        return Decision.terminate(state)

    # ------------------------------------------------------------------
    # Helpers
    def _can_repair(self, state: WorkflowState, step_id: str) -> bool:
        counter = state.retry_state.get(step_id)
        repairs = counter.validation_repairs if counter else 0
        return repairs < self.max_validation_repairs

    def _run(
        self, state: WorkflowState, definition: WorkflowDefinition, step_ids: List[str]
    ) -> Decision:
        """Schedule ``step_ids`` unless a human review gate blocks the wavefront."""
        gated = []
        for step_id in step_ids:
            step = definition.get_step(step_id)
            if step and step.requires_human_review and step_id not in state.approved_step_ids:
                gated.append(step_id)

        if gated:
            state.status = WorkflowStatus.PENDING_HUMAN_REVIEW
            state.awaiting_review = gated
            state.blocked_step_ids = list(step_ids)
            for step_id in gated:
                state.append_history(
                    step_id,
                    WorkflowStatus.PENDING_HUMAN_REVIEW,
                    notes={"reason": "awaiting human review"},
                )
            logger.info(f"Workflow {state.workflow_id} waiting for review of {gated}")
            return Decision.wait(state)

        state.status = WorkflowStatus.IN_PROGRESS
        state.awaiting_review = []
        state.blocked_step_ids = []
        state.running_step_ids = list(step_ids)
        return Decision(step_ids=list(step_ids), updated_state=state)
