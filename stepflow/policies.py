"""Retry and fallback policies applied to failed steps."""

from __future__ import annotations

from datetime import timedelta
from typing import Callable, Optional, Tuple

from .constants import DEFAULT_BASE_DELAY_MS
from .contracts import RetryCounter, WorkflowDefinition, WorkflowState, WorkflowStep, utc_now
from .utils.retry import compute_backoff


class RetryPolicy:
    """Decides whether a failed step may run again and how long to wait.

    The policy holds no per-workflow state: attempt counts live in
    ``WorkflowState.retry_state`` keyed by step id, so parallel steps that
    fail together are counted independently.
    """

    def __init__(
        self,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        clock: Callable = utc_now,
    ) -> None:
        self.base_delay_ms = base_delay_ms
        self._clock = clock

    def _counter(self, state: WorkflowState, step: WorkflowStep) -> RetryCounter:
        counter = state.retry_state.get(step.step_id)
        if counter is None:
            counter = RetryCounter(
                max_attempts=step.max_retries,
                base_delay_ms=self.base_delay_for(step),
            )
        return counter

    def base_delay_for(self, step: WorkflowStep) -> int:
        if step.base_delay_ms is not None:
            return step.base_delay_ms
        return self.base_delay_ms

    def should_retry(self, state: WorkflowState, step: WorkflowStep) -> bool:
        error = state.failed_steps.get(step.step_id)
        if error is None or not error.retryable:
            return False
        return self._counter(state, step).attempt < step.max_retries

    def backoff(self, state: WorkflowState, step: WorkflowStep) -> Tuple[RetryCounter, int]:
        """Record one more attempt for ``step`` and return ``(counter, delay_ms)``.

        The counter stored in ``state.retry_state`` is replaced, never
        mutated, so snapshots taken earlier keep their values.
        """
        current = self._counter(state, step)
        attempt = current.attempt + 1
        delay_ms = compute_backoff(attempt, current.base_delay_ms)
        now = self._clock()
        counter = current.model_copy(
            update={
                "attempt": attempt,
                "max_attempts": step.max_retries,
                "last_attempt_at": now,
                "next_retry_at": now + timedelta(milliseconds=delay_ms),
            }
        )
        state.retry_state[step.step_id] = counter
        return counter, delay_ms


class FallbackResolver:
    """Maps a step that exhausted its retries to its configured fallback."""

    def __init__(self, retry_policy: RetryPolicy) -> None:
        self.retry_policy = retry_policy

    def resolve(
        self, state: WorkflowState, step: WorkflowStep, definition: WorkflowDefinition
    ) -> Optional[str]:
        target = definition.fallback_map.get(step.step_id)
        if target is None:
            return None
        if self.retry_policy.should_retry(state, step):
            return None
        # each fallback target is used at most once per instance
        if target in state.fallback_routes.values() or target == step.step_id:
            return None
        return target
