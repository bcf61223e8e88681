"""End-to-end workflow runs through the runner, orchestrator and dispatcher."""

import asyncio
import threading

import pytest

from stepflow.actions import ActionRegistry, BaseAction, FunctionAction
from stepflow.config import RetryConfig, RunnerConfig, StepflowConfig
from stepflow.contracts import (
    StepExecutionResult,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    WorkflowStep,
)
from stepflow.errors import (
    ActionFailed,
    ErrorKind,
    PersistenceNotConfigured,
    WorkflowNotResumable,
    WorkflowStateNotFound,
)
from stepflow.persistence import InMemoryStatePersistence
from stepflow.runner import WorkflowRunner


def _runner(registry, persistence=None, **runner_kwargs) -> WorkflowRunner:
    config = StepflowConfig(
        runner=RunnerConfig(**runner_kwargs),
        retry=RetryConfig(base_delay_ms=2000),
    )
    return WorkflowRunner(
        registry=registry,
        persistence=persistence or InMemoryStatePersistence(),
        config=config,
    )


@pytest.fixture
def delays(monkeypatch):
    """Record retry sleeps instead of waiting for them."""
    recorded = []

    async def fake_sleep(delay_ms):
        recorded.append(delay_ms)

    monkeypatch.setattr("stepflow.dispatch.sleep_ms", fake_sleep)
    return recorded


def _echo_registry(*names: str) -> ActionRegistry:
    registry = ActionRegistry()
    for name in names:
        registry.register(FunctionAction(name, lambda input, name=name: f"{name}-done"))
    return registry


def _success_steps(state: WorkflowState):
    return [h.step_id for h in state.history if h.status == WorkflowStatus.SUCCESS]


@pytest.mark.asyncio
async def test_linear_workflow_succeeds():
    definition = WorkflowDefinition(
        id="linear",
        steps=[
            WorkflowStep(step_id="A", action_name="a"),
            WorkflowStep(step_id="B", action_name="b", dependencies=["A"]),
            WorkflowStep(step_id="C", action_name="c", dependencies=["B"]),
        ],
    )
    runner = _runner(_echo_registry("a", "b", "c"))

    result = await runner.execute(definition, {"input": {"topic": "launch"}})

    assert result.success
    assert result.error is None
    state = result.state
    assert state.status == WorkflowStatus.SUCCESS
    assert state.completed_at is not None
    assert state.context.outputs == {"A": "a-done", "B": "b-done", "C": "c-done"}
    assert _success_steps(state) == ["A", "B", "C"]
    assert len(state.history) == 3
    assert result.metadata.steps_executed == 3
    assert result.metadata.retries_performed == 0


@pytest.mark.asyncio
async def test_retry_with_exponential_backoff(delays):
    calls = {"n": 0}

    def flaky(input):
        calls["n"] += 1
        if calls["n"] <= 2:
            raise RuntimeError(f"transient failure {calls['n']}")
        return "recovered"

    registry = _echo_registry("a")
    registry.register(FunctionAction("flaky", flaky))
    definition = WorkflowDefinition(
        id="retry",
        steps=[
            WorkflowStep(step_id="A", action_name="a"),
            WorkflowStep(step_id="B", action_name="flaky", dependencies=["A"], max_retries=2),
        ],
    )

    result = await _runner(registry).execute(definition)

    assert result.success
    b_history = [h for h in result.state.history if h.step_id == "B"]
    assert [h.status for h in b_history] == [
        WorkflowStatus.FAILED,
        WorkflowStatus.FAILED,
        WorkflowStatus.SUCCESS,
    ]
    assert [h.notes["attempt"] for h in b_history] == [1, 2, 3]
    assert b_history[0].error.kind == ErrorKind.EXECUTION_ERROR
    assert delays == [2000, 4000]
    assert result.metadata.retries_performed == 2
    assert result.state.context.outputs["B"] == "recovered"


@pytest.mark.asyncio
async def test_retries_exhausted_fails_workflow(delays):
    def broken(input):
        raise RuntimeError("always down")

    registry = ActionRegistry()
    registry.register(FunctionAction("broken", broken))
    definition = WorkflowDefinition(
        id="exhausted",
        steps=[WorkflowStep(step_id="A", action_name="broken", max_retries=3)],
    )

    result = await _runner(registry).execute(definition)

    assert not result.success
    assert result.state.status == WorkflowStatus.FAILED
    assert result.error.message == "always down"
    assert delays == [2000, 4000, 8000]
    assert len(result.state.history) == 4


@pytest.mark.asyncio
async def test_human_review_suspends_until_resumed():
    persistence = InMemoryStatePersistence()
    registry = _echo_registry("a", "publish", "announce")
    definition = WorkflowDefinition(
        id="review",
        steps=[
            WorkflowStep(step_id="A", action_name="a"),
            WorkflowStep(
                step_id="D",
                action_name="publish",
                dependencies=["A"],
                requires_human_review=True,
            ),
            WorkflowStep(step_id="E", action_name="announce", dependencies=["D"]),
        ],
    )
    runner = _runner(registry, persistence)

    result = await runner.execute(definition, workflow_id="wf-review")

    assert not result.success
    assert result.state.status == WorkflowStatus.PENDING_HUMAN_REVIEW
    assert result.state.awaiting_review == ["D"]
    assert _success_steps(result.state) == ["A"]
    stored = await persistence.load("wf-review")
    assert stored.status == WorkflowStatus.PENDING_HUMAN_REVIEW

    # resuming without approval stays suspended
    again = await runner.resume("wf-review", definition)
    assert again.state.status == WorkflowStatus.PENDING_HUMAN_REVIEW
    assert "D" not in again.state.context.outputs

    resumed = await runner.resume(
        "wf-review",
        definition,
        {"approve": ["D"], "shared_state": {"reviewer": "ops"}},
    )

    assert resumed.success
    assert _success_steps(resumed.state) == ["A", "D", "E"]
    assert resumed.state.context.shared_state == {"reviewer": "ops"}
    assert resumed.state.awaiting_review == []


@pytest.mark.asyncio
async def test_fallback_replaces_failed_step():
    def primary(input):
        raise ActionFailed("provider rejected request", retryable=False)

    registry = _echo_registry("backup", "after")
    registry.register(FunctionAction("primary", primary))
    definition = WorkflowDefinition(
        id="fallback",
        steps=[
            WorkflowStep(step_id="A", action_name="primary", max_retries=3),
            WorkflowStep(step_id="A_fallback", action_name="backup"),
            WorkflowStep(step_id="B", action_name="after", dependencies=["A"]),
        ],
        fallback_map={"A": "A_fallback"},
    )

    result = await _runner(registry).execute(definition)

    assert result.success
    state = result.state
    assert state.fallback_routes == {"A": "A_fallback"}
    assert _success_steps(state) == ["A_fallback", "B"]
    fallback_entry = next(h for h in state.history if h.step_id == "A_fallback")
    assert fallback_entry.notes["fallback_for"] == "A"
    # the first failure is still the recorded last error
    assert state.last_error.message == "provider rejected request"


@pytest.mark.asyncio
async def test_zero_steps_is_a_configuration_error():
    result = await _runner(ActionRegistry()).execute(WorkflowDefinition(id="empty"))

    assert not result.success
    assert result.state.status == WorkflowStatus.FAILED
    assert result.error.kind == ErrorKind.CONFIGURATION_ERROR
    assert result.metadata.steps_executed == 0


@pytest.mark.asyncio
async def test_parallel_steps_see_snapshots_and_merge_after_batch():
    seen = {}

    async def left(input):
        await asyncio.sleep(0.01)
        seen["left"] = dict(input.context.shared_state)
        input.context.shared_state["leaked"] = True
        return StepExecutionResult(success=True, output="L", shared_state={"left": 1})

    async def right(input):
        seen["right"] = dict(input.context.shared_state)
        return StepExecutionResult(success=True, output="R", shared_state={"right": 2})

    def join(input):
        seen["join"] = dict(input.context.shared_state)
        return sorted(input.context.outputs)

    registry = _echo_registry("root")
    registry.register_many(
        [FunctionAction("left", left), FunctionAction("right", right), FunctionAction("join", join)]
    )
    definition = WorkflowDefinition(
        id="fan",
        steps=[
            WorkflowStep(step_id="root", action_name="root"),
            WorkflowStep(step_id="left", action_name="left", dependencies=["root"]),
            WorkflowStep(step_id="right", action_name="right", dependencies=["root"]),
            WorkflowStep(step_id="join", action_name="join", dependencies=["left", "right"]),
        ],
    )

    result = await _runner(registry).execute(definition)

    assert result.success
    assert seen["left"] == {}
    assert seen["right"] == {}
    assert seen["join"] == {"left": 1, "right": 2}
    assert result.state.context.outputs["join"] == ["left", "right", "root"]
    # batch results are recorded in dispatch order
    assert _success_steps(result.state) == ["root", "left", "right", "join"]


@pytest.mark.asyncio
async def test_partial_batch_failure_keeps_sibling_output():
    def bad(input):
        raise ActionFailed("bad input", retryable=False)

    registry = _echo_registry("good")
    registry.register(FunctionAction("bad", bad))
    definition = WorkflowDefinition(
        id="partial",
        steps=[
            WorkflowStep(step_id="good", action_name="good"),
            WorkflowStep(step_id="bad", action_name="bad"),
        ],
    )

    result = await _runner(registry).execute(definition)

    assert result.state.status == WorkflowStatus.FAILED
    assert result.state.context.outputs == {"good": "good-done"}


@pytest.mark.asyncio
async def test_sibling_keeps_retrying_after_other_step_exhausts(delays):
    calls = {"A": 0, "B": 0}

    def always_fails(input):
        step_id = input.metadata["step_id"]
        calls[step_id] += 1
        raise RuntimeError(f"{step_id} unavailable")

    registry = ActionRegistry()
    registry.register(FunctionAction("fails", always_fails))
    definition = WorkflowDefinition(
        id="siblings",
        steps=[
            WorkflowStep(step_id="A", action_name="fails", max_retries=3),
            WorkflowStep(step_id="B", action_name="fails", max_retries=1),
        ],
    )

    result = await _runner(registry).execute(definition)

    assert not result.success
    state = result.state
    assert state.status == WorkflowStatus.FAILED
    assert calls == {"A": 4, "B": 2}
    assert state.retry_state["A"].attempt == 3
    assert state.retry_state["B"].attempt == 1
    assert state.unrecoverable_step_ids == []
    assert sorted(delays) == [2000, 2000, 4000, 8000]
    assert result.metadata.retries_performed == 4


@pytest.mark.asyncio
async def test_output_that_cannot_be_copied_fails_the_step_not_the_run():
    registry = _echo_registry("b")
    registry.register(FunctionAction("locked", lambda input: {"lock": threading.Lock()}))
    definition = WorkflowDefinition(
        id="uncopyable",
        steps=[
            WorkflowStep(step_id="A", action_name="locked", max_retries=2),
            WorkflowStep(step_id="B", action_name="b", dependencies=["A"]),
        ],
    )

    result = await _runner(registry).execute(definition)

    assert not result.success
    assert result.state.status == WorkflowStatus.FAILED
    assert result.error.kind == ErrorKind.EXECUTION_ERROR
    assert result.error.step_id == "A"
    assert not result.error.retryable
    assert result.state.context.outputs == {}
    assert [h.step_id for h in result.state.history] == ["A"]


@pytest.mark.asyncio
async def test_error_handler_runs_and_workflow_fails():
    handled = []

    def broken(input):
        raise ActionFailed("cannot continue", retryable=False)

    def on_error(input):
        handled.append(sorted(input.context.outputs))
        return "alerted"

    registry = ActionRegistry()
    registry.register_many([FunctionAction("broken", broken), FunctionAction("alert", on_error)])
    definition = WorkflowDefinition(
        id="handled",
        steps=[
            WorkflowStep(step_id="A", action_name="broken"),
            WorkflowStep(step_id="alert", action_name="alert"),
        ],
        error_handler="alert",
    )

    result = await _runner(registry).execute(definition)

    assert not result.success
    assert result.state.status == WorkflowStatus.FAILED
    assert result.state.context.outputs == {"alert": "alerted"}
    assert handled == [[]]
    assert result.error.message == "cannot continue"


@pytest.mark.asyncio
async def test_success_handler_runs_last():
    definition = WorkflowDefinition(
        id="notify",
        steps=[
            WorkflowStep(step_id="A", action_name="a"),
            WorkflowStep(step_id="done", action_name="notify"),
        ],
        success_handler="done",
    )
    result = await _runner(_echo_registry("a", "notify")).execute(definition)

    assert result.success
    assert _success_steps(result.state) == ["A", "done"]


@pytest.mark.asyncio
async def test_validation_repair_passes_instructions():
    class NeedsGuidance(BaseAction):
        name = "guided"

        async def custom_validation(self, input):
            if not input.instructions:
                return ["add a summary field"]
            return []

        async def execute(self, input):
            return {"summary": input.instructions}

    registry = ActionRegistry()
    registry.register(NeedsGuidance())
    definition = WorkflowDefinition(
        id="repair",
        steps=[WorkflowStep(step_id="S", action_name="guided")],
    )

    result = await _runner(registry).execute(definition)

    assert result.success
    statuses = [h.status for h in result.state.history]
    assert statuses == [WorkflowStatus.VALIDATION_FAILED, WorkflowStatus.SUCCESS]
    assert result.state.history[-1].notes["instructions"] == "add a summary field"
    assert result.state.context.outputs["S"] == {"summary": "add a summary field"}


@pytest.mark.asyncio
async def test_global_timeout_between_batches():
    async def slow(input):
        await asyncio.sleep(0.1)
        return "slow"

    registry = _echo_registry("next")
    registry.register(FunctionAction("slow", slow))
    definition = WorkflowDefinition(
        id="timeout",
        steps=[
            WorkflowStep(step_id="A", action_name="slow"),
            WorkflowStep(step_id="B", action_name="next", dependencies=["A"]),
        ],
    )

    result = await _runner(registry, max_execution_time_ms=50).execute(definition)

    assert not result.success
    assert result.state.status == WorkflowStatus.TIMED_OUT
    assert result.error.kind == ErrorKind.TIMEOUT
    # the in-flight batch finished before the timeout was observed
    assert _success_steps(result.state) == ["A"]


@pytest.mark.asyncio
async def test_pause_requested_mid_run_then_resume():
    persistence = InMemoryStatePersistence()
    registry = _echo_registry("b")
    runner = _runner(registry, persistence)

    async def pausing(input):
        assert await runner.pause(input.context.workflow_id) is None
        return "a-done"

    registry.register(FunctionAction("a", pausing))
    definition = WorkflowDefinition(
        id="pause",
        steps=[
            WorkflowStep(step_id="A", action_name="a"),
            WorkflowStep(step_id="B", action_name="b", dependencies=["A"]),
        ],
    )

    paused = await runner.execute(definition, workflow_id="wf-pause")
    assert paused.state.status == WorkflowStatus.PAUSED
    assert paused.state.paused_from == WorkflowStatus.SUCCESS
    assert _success_steps(paused.state) == ["A"]

    registry.register(FunctionAction("a", lambda input: "a-again"))
    resumed = await runner.resume("wf-pause", definition)
    assert resumed.success
    assert _success_steps(resumed.state) == ["A", "B"]
    assert resumed.state.context.outputs["A"] == "a-done"


@pytest.mark.asyncio
async def test_cancel_stored_workflow_and_reject_resume():
    persistence = InMemoryStatePersistence()
    definition = WorkflowDefinition(
        id="cancel",
        steps=[
            WorkflowStep(step_id="A", action_name="a"),
            WorkflowStep(step_id="B", action_name="b", dependencies=["A"], requires_human_review=True),
        ],
    )
    runner = _runner(_echo_registry("a", "b"), persistence)
    await runner.execute(definition, workflow_id="wf-cancel")

    canceled = await runner.cancel("wf-cancel")
    assert canceled.status == WorkflowStatus.CANCELED
    assert (await persistence.load("wf-cancel")).status == WorkflowStatus.CANCELED

    with pytest.raises(WorkflowNotResumable):
        await runner.resume("wf-cancel", definition, {"approve": ["B"]})


@pytest.mark.asyncio
async def test_resume_interrupted_batch_reruns_running_steps():
    persistence = InMemoryStatePersistence()
    definition = WorkflowDefinition(
        id="crash",
        steps=[
            WorkflowStep(step_id="A", action_name="a"),
            WorkflowStep(step_id="B", action_name="b", dependencies=["A"]),
        ],
    )
    state = WorkflowState.create("wf-crash")
    state.append_history("A", WorkflowStatus.SUCCESS)
    state.context.outputs["A"] = "a-done"
    state.status = WorkflowStatus.IN_PROGRESS
    state.running_step_ids = ["B"]
    await persistence.save(state.workflow_id, state)

    result = await _runner(_echo_registry("a", "b"), persistence).resume("wf-crash", definition)

    assert result.success
    assert _success_steps(result.state) == ["A", "B"]
    assert result.state.running_step_ids == []


@pytest.mark.asyncio
async def test_resume_errors():
    definition = WorkflowDefinition(id="x", steps=[WorkflowStep(step_id="A", action_name="a")])
    runner = _runner(_echo_registry("a"))
    with pytest.raises(WorkflowStateNotFound):
        await runner.resume("nope", definition)

    config = StepflowConfig(runner=RunnerConfig(persist_state=False))
    detached = WorkflowRunner(registry=_echo_registry("a"), config=config)
    with pytest.raises(PersistenceNotConfigured):
        await detached.resume("nope", definition)


@pytest.mark.asyncio
async def test_missing_action_fails_without_raising():
    definition = WorkflowDefinition(
        id="missing",
        steps=[WorkflowStep(step_id="A", action_name="unregistered", max_retries=2)],
    )
    result = await _runner(ActionRegistry()).execute(definition)

    assert not result.success
    assert result.error.kind == ErrorKind.ACTION_NOT_FOUND
    assert len(result.state.history) == 1


@pytest.mark.asyncio
async def test_state_is_persisted_after_each_batch():
    persistence = InMemoryStatePersistence()
    saved = []
    original_save = persistence.save

    async def recording_save(workflow_id, state):
        saved.append(state.status)
        await original_save(workflow_id, state)

    persistence.save = recording_save
    definition = WorkflowDefinition(id="p", steps=[WorkflowStep(step_id="A", action_name="a")])

    result = await _runner(_echo_registry("a"), persistence).execute(definition, workflow_id="wf-p")

    assert result.success
    assert saved[0] == WorkflowStatus.PENDING
    assert WorkflowStatus.IN_PROGRESS in saved
    assert saved[-1] == WorkflowStatus.SUCCESS
    assert (await persistence.load("wf-p")).completed_at is not None


@pytest.mark.asyncio
async def test_persistence_errors_are_logged_not_raised(caplog):
    class BrokenStore(InMemoryStatePersistence):
        async def save(self, workflow_id, state):
            raise OSError("disk full")

    definition = WorkflowDefinition(id="p", steps=[WorkflowStep(step_id="A", action_name="a")])
    result = await _runner(_echo_registry("a"), BrokenStore()).execute(definition)

    assert result.success
    assert "disk full" in caplog.text
