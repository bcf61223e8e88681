"""Storage abstraction for workflow execution state."""

from __future__ import annotations

from typing import Protocol

from ..contracts import WorkflowState


class StatePersistence(Protocol):
    """Protocol for workflow state persistence backends."""

    async def save(self, workflow_id: str, state: WorkflowState) -> None:
        """Persist ``state``, replacing any earlier snapshot."""

    async def load(self, workflow_id: str) -> WorkflowState | None:
        """Return the last saved state or ``None``."""

    async def list_workflows(self) -> list[WorkflowState]:
        """Return all persisted workflow states."""
