"""Tests for retry backoff and fallback selection."""

from datetime import datetime, timedelta, timezone

import pytest

from stepflow.contracts import (
    StepError,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStep,
)
from stepflow.errors import ErrorKind
from stepflow.policies import FallbackResolver, RetryPolicy
from stepflow.utils.retry import compute_backoff

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _failed(state: WorkflowState, step_id: str, retryable: bool = True) -> WorkflowState:
    state.failed_steps[step_id] = StepError.of(
        ErrorKind.EXECUTION_ERROR, "boom", retryable=retryable, step_id=step_id
    )
    return state


def test_compute_backoff_doubles():
    assert [compute_backoff(n, 2000) for n in (1, 2, 3)] == [2000, 4000, 8000]
    assert compute_backoff(2, 150) == 300


def test_compute_backoff_rejects_attempt_zero():
    with pytest.raises(ValueError):
        compute_backoff(0, 2000)


def test_backoff_sequence_stops_at_max_retries():
    policy = RetryPolicy(2000, clock=lambda: NOW)
    step = WorkflowStep(step_id="s", action_name="x", max_retries=3)
    state = _failed(WorkflowState.create("wf-1"), "s")

    delays = []
    while policy.should_retry(state, step):
        counter, delay = policy.backoff(state, step)
        delays.append(delay)

    assert delays == [2000, 4000, 8000]
    assert state.retry_state["s"].attempt == 3
    assert counter.next_retry_at == NOW + timedelta(milliseconds=8000)


def test_non_retryable_error_is_not_retried():
    policy = RetryPolicy(2000)
    step = WorkflowStep(step_id="s", action_name="x", max_retries=3)
    state = _failed(WorkflowState.create("wf-1"), "s", retryable=False)
    assert not policy.should_retry(state, step)


def test_zero_max_retries_never_retries():
    policy = RetryPolicy(2000)
    step = WorkflowStep(step_id="s", action_name="x")
    state = _failed(WorkflowState.create("wf-1"), "s")
    assert not policy.should_retry(state, step)


def test_step_base_delay_overrides_policy_default():
    policy = RetryPolicy(2000)
    step = WorkflowStep(step_id="s", action_name="x", max_retries=2, base_delay_ms=10)
    state = _failed(WorkflowState.create("wf-1"), "s")
    _, delay = policy.backoff(state, step)
    assert delay == 10


def test_counters_are_isolated_per_step():
    policy = RetryPolicy(100)
    first = WorkflowStep(step_id="a", action_name="x", max_retries=2)
    second = WorkflowStep(step_id="b", action_name="x", max_retries=2)
    state = _failed(_failed(WorkflowState.create("wf-1"), "a"), "b")

    policy.backoff(state, first)
    policy.backoff(state, first)
    _, delay = policy.backoff(state, second)

    assert state.retry_state["a"].attempt == 2
    assert state.retry_state["b"].attempt == 1
    assert delay == 100
    assert not policy.should_retry(state, first)
    assert policy.should_retry(state, second)


def test_backoff_replaces_counter_instead_of_mutating():
    policy = RetryPolicy(100)
    step = WorkflowStep(step_id="s", action_name="x", max_retries=2)
    state = _failed(WorkflowState.create("wf-1"), "s")
    first, _ = policy.backoff(state, step)
    policy.backoff(state, step)
    assert first.attempt == 1


def test_fallback_resolves_after_retries_are_exhausted():
    policy = RetryPolicy(100)
    resolver = FallbackResolver(policy)
    step = WorkflowStep(step_id="a", action_name="x", max_retries=1)
    definition = WorkflowDefinition(
        id="wf",
        steps=[step, WorkflowStep(step_id="b", action_name="x")],
        fallback_map={"a": "b"},
    )
    state = _failed(WorkflowState.create("wf-1"), "a")
    assert resolver.resolve(state, step, definition) is None

    policy.backoff(state, step)
    assert resolver.resolve(state, step, definition) == "b"


def test_fallback_target_is_used_once():
    resolver = FallbackResolver(RetryPolicy(100))
    a = WorkflowStep(step_id="a", action_name="x")
    b = WorkflowStep(step_id="b", action_name="x")
    definition = WorkflowDefinition(id="wf", steps=[a, b], fallback_map={"a": "b", "b": "a"})
    state = _failed(WorkflowState.create("wf-1"), "b")
    state.fallback_routes["a"] = "b"
    # b's own fallback would route back to a; a is not yet a used target
    assert resolver.resolve(state, b, definition) == "a"

    state.fallback_routes["b"] = "a"
    state.failed_steps = {}
    _failed(state, "a")
    assert resolver.resolve(state, a, definition) is None


def test_no_fallback_without_mapping():
    resolver = FallbackResolver(RetryPolicy(100))
    step = WorkflowStep(step_id="a", action_name="x")
    definition = WorkflowDefinition(id="wf", steps=[step])
    state = _failed(WorkflowState.create("wf-1"), "a")
    assert resolver.resolve(state, step, definition) is None
