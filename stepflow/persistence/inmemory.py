"""In-memory implementation of state persistence."""

from __future__ import annotations

from typing import Dict

from ..contracts import WorkflowState
from .repository import StatePersistence


class InMemoryStatePersistence(StatePersistence):
    """Store workflow state in local memory.

    States are kept as JSON so a loaded state never aliases the object the
    runner keeps mutating. Data is not persisted across process restarts.
    """

    def __init__(self) -> None:
        self._states: Dict[str, str] = {}

    async def save(self, workflow_id: str, state: WorkflowState) -> None:
        self._states[workflow_id] = state.model_dump_json()

    async def load(self, workflow_id: str) -> WorkflowState | None:
        raw = self._states.get(workflow_id)
        if raw is None:
            return None
        return WorkflowState.model_validate_json(raw)

    async def list_workflows(self) -> list[WorkflowState]:
        return [WorkflowState.model_validate_json(raw) for raw in self._states.values()]

    async def delete(self, workflow_id: str) -> None:
        self._states.pop(workflow_id, None)
