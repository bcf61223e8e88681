"""Stepflow: deterministic DAG workflow orchestration."""

from .actions import REGISTRY, Action, ActionInput, ActionRegistry, BaseAction, action
from .config import StepflowConfig, load_config
from .contracts import (
    Decision,
    DecisionAction,
    ExecutionResult,
    ResumeRequest,
    StepError,
    StepExecutionResult,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    WorkflowStep,
)
from .errors import ActionFailed, ErrorKind, StepflowError
from .orchestrator import Orchestrator
from .persistence import get_persistence
from .runner import WorkflowRunner

__version__ = "0.1.0"
__all__ = [
    "Action",
    "ActionFailed",
    "ActionInput",
    "ActionRegistry",
    "BaseAction",
    "Decision",
    "DecisionAction",
    "ErrorKind",
    "ExecutionResult",
    "Orchestrator",
    "REGISTRY",
    "ResumeRequest",
    "StepError",
    "StepExecutionResult",
    "StepflowConfig",
    "StepflowError",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowRunner",
    "WorkflowState",
    "WorkflowStatus",
    "WorkflowStep",
    "action",
    "get_persistence",
    "load_config",
]
