"""Error taxonomy and exception types for stepflow."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Category of a step or workflow failure."""

    STEP_NOT_FOUND = "STEP_NOT_FOUND"
    ACTION_NOT_FOUND = "ACTION_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    TIMEOUT = "TIMEOUT"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


# Retryability applied when a step implementation does not say otherwise.
DEFAULT_RETRYABLE = {
    ErrorKind.STEP_NOT_FOUND: False,
    ErrorKind.ACTION_NOT_FOUND: False,
    ErrorKind.VALIDATION_ERROR: False,
    ErrorKind.EXECUTION_ERROR: True,
    ErrorKind.TIMEOUT: True,
    ErrorKind.CONFIGURATION_ERROR: False,
}


def is_retryable_by_default(kind: ErrorKind | str) -> bool:
    """Return the default retry flag for ``kind``; unknown kinds are not retried."""
    try:
        return DEFAULT_RETRYABLE[ErrorKind(kind)]
    except ValueError:
        return False


class StepflowError(Exception):
    """Base class for errors raised by the engine itself."""


class ActionFailed(StepflowError):
    """Raised by an action to report a failure with an explicit retry flag."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.EXECUTION_ERROR,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.retryable = is_retryable_by_default(kind) if retryable is None else retryable


class WorkflowStateNotFound(StepflowError):
    """No persisted state exists for the requested workflow id."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow state not found: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowNotResumable(StepflowError):
    """The workflow is in a terminal state and cannot be resumed."""

    def __init__(self, workflow_id: str, status: str) -> None:
        super().__init__(f"Workflow {workflow_id} is {status} and cannot be resumed")
        self.workflow_id = workflow_id
        self.status = status


class PersistenceNotConfigured(StepflowError):
    """An operation needs a state persistence backend but none is configured."""


class WorkflowExecutionError(StepflowError):
    """The runner loop itself failed (not an individual step)."""

    def __init__(self, workflow_id: str, message: str) -> None:
        super().__init__(f"Workflow {workflow_id} execution failed: {message}")
        self.workflow_id = workflow_id
