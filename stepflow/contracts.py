"""Core data contracts for the stepflow workflow engine."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorKind, is_retryable_by_default


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    """Execution status of a workflow instance or history entry."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PENDING_HUMAN_REVIEW = "pending_human_review"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    PAUSED = "paused"
    CANCELED = "canceled"
    VALIDATION_FAILED = "validation_failed"


# Statuses that describe "a batch came back with failures".
FAILURE_STATUSES = frozenset(
    {
        WorkflowStatus.FAILED,
        WorkflowStatus.TIMED_OUT,
        WorkflowStatus.VALIDATION_FAILED,
    }
)


class StepError(BaseModel):
    """Error captured from a step invocation or from the engine."""

    message: str
    type: str = ErrorKind.EXECUTION_ERROR.value
    retryable: bool = False
    step_id: Optional[str] = None
    validation_message: Optional[str] = None

    @classmethod
    def of(
        cls,
        kind: ErrorKind,
        message: str,
        retryable: Optional[bool] = None,
        **extra: Any,
    ) -> "StepError":
        """Build an error of ``kind`` using the kind's default retry flag."""
        if retryable is None:
            retryable = is_retryable_by_default(kind)
        return cls(message=message, type=kind.value, retryable=retryable, **extra)

    @property
    def kind(self) -> Optional[ErrorKind]:
        try:
            return ErrorKind(self.type)
        except ValueError:
            return None


class WorkflowStep(BaseModel):
    """One named unit of work in a workflow definition."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    action_name: str
    display_name: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)
    requires_human_review: bool = False
    max_retries: int = Field(default=0, ge=0)
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    base_delay_ms: Optional[int] = Field(default=None, ge=0)


class WorkflowDefinition(BaseModel):
    """Static, externally supplied description of a workflow graph."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    error_handler: Optional[str] = None
    success_handler: Optional[str] = None
    dead_letter_handler: Optional[str] = None
    fallback_map: Dict[str, str] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        """Return the step with ``step_id`` or ``None``."""
        return next((s for s in self.steps if s.step_id == step_id), None)

    @property
    def step_ids(self) -> List[str]:
        return [s.step_id for s in self.steps]

    @property
    def routed_step_ids(self) -> set[str]:
        """Steps that only run when routed to: handlers and fallback targets."""
        routed = set(self.fallback_map.values())
        for handler in (self.error_handler, self.success_handler, self.dead_letter_handler):
            if handler:
                routed.add(handler)
        return routed


class HistoryEntry(BaseModel):
    """Audit record of one step outcome."""

    step_id: str
    status: WorkflowStatus
    timestamp: datetime = Field(default_factory=utc_now)
    notes: Optional[Dict[str, Any]] = None
    error: Optional[StepError] = None


class RetryCounter(BaseModel):
    """Retry bookkeeping for a single step."""

    attempt: int = 0
    max_attempts: int = 0
    base_delay_ms: int = 0
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    validation_repairs: int = 0


class WorkflowContext(BaseModel):
    """Input, per-step outputs and shared state handed to steps."""

    workflow_id: str
    user_id: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    shared_state: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowState(BaseModel):
    """Serializable execution record of one workflow instance."""

    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    running_step_ids: List[str] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    retry_state: Dict[str, RetryCounter] = Field(default_factory=dict)
    last_error: Optional[StepError] = None
    context: WorkflowContext
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    failed_steps: Dict[str, StepError] = Field(default_factory=dict)
    fallback_routes: Dict[str, str] = Field(default_factory=dict)
    approved_step_ids: List[str] = Field(default_factory=list)
    awaiting_review: List[str] = Field(default_factory=list)
    blocked_step_ids: List[str] = Field(default_factory=list)
    unrecoverable_step_ids: List[str] = Field(default_factory=list)
    active_handler: Optional[str] = None
    handler_route: Optional[str] = None
    paused_from: Optional[WorkflowStatus] = None

    @classmethod
    def create(
        cls, workflow_id: str, context: Optional[WorkflowContext] = None
    ) -> "WorkflowState":
        """Return a fresh ``pending`` state for ``workflow_id``."""
        return cls(
            workflow_id=workflow_id,
            context=context or WorkflowContext(workflow_id=workflow_id),
        )

    @property
    def is_terminal(self) -> bool:
        if self.status == WorkflowStatus.CANCELED:
            return True
        return (
            self.status
            in (WorkflowStatus.SUCCESS, WorkflowStatus.FAILED, WorkflowStatus.TIMED_OUT)
            and self.completed_at is not None
        )

    def append_history(
        self,
        step_id: str,
        status: WorkflowStatus,
        notes: Optional[Dict[str, Any]] = None,
        error: Optional[StepError] = None,
    ) -> HistoryEntry:
        """Append a new entry to the audit trail and return it."""
        entry = HistoryEntry(step_id=step_id, status=status, notes=notes, error=error)
        self.history.append(entry)
        return entry

    def retry_counter(self, step_id: str) -> Optional[RetryCounter]:
        return self.retry_state.get(step_id)


class StepExecutionResult(BaseModel):
    """Outcome of invoking one step against the action boundary."""

    success: bool
    output: Any = None
    error: Optional[StepError] = None
    shared_state: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(cls, error: StepError, **metadata: Any) -> "StepExecutionResult":
        return cls(success=False, error=error, metadata=metadata)


class DecisionAction(str, Enum):
    WAIT = "WAIT"
    TERMINATE = "TERMINATE"


class Decision(BaseModel):
    """What the orchestrator wants to happen next, plus the state it derived."""

    step_ids: List[str] = Field(default_factory=list)
    action: Optional[DecisionAction] = None
    delay_ms: int = 0
    delays_ms: Dict[str, int] = Field(default_factory=dict)
    instructions: Dict[str, str] = Field(default_factory=dict)
    retries: List[str] = Field(default_factory=list)
    updated_state: WorkflowState

    @classmethod
    def wait(cls, state: WorkflowState) -> "Decision":
        return cls(action=DecisionAction.WAIT, updated_state=state)

    @classmethod
    def terminate(cls, state: WorkflowState) -> "Decision":
        return cls(action=DecisionAction.TERMINATE, updated_state=state)

    @property
    def runs_steps(self) -> bool:
        return self.action is None and bool(self.step_ids)


class ResumeRequest(BaseModel):
    """Caller-supplied updates applied before a suspended workflow resumes."""

    approve: List[str] = Field(default_factory=list)
    input: Optional[Dict[str, Any]] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)
    shared_state: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def apply(self, state: WorkflowState) -> None:
        """Merge these updates into ``state`` in place."""
        for step_id in self.approve:
            if step_id not in state.approved_step_ids:
                state.approved_step_ids.append(step_id)
        if self.input is not None:
            state.context.input = dict(self.input)
        state.context.outputs.update(self.outputs)
        state.context.shared_state.update(self.shared_state)
        state.context.metadata.update(self.metadata)


class ExecutionMetadata(BaseModel):
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    steps_executed: int = 0
    retries_performed: int = 0


class ExecutionResult(BaseModel):
    """Externally visible outcome of a runner invocation."""

    success: bool
    state: WorkflowState
    error: Optional[StepError] = None
    metadata: ExecutionMetadata
