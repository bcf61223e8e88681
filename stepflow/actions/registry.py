"""Name keyed lookup of step implementations."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from .base import Action

logger = logging.getLogger(__name__)


class ActionRegistry:
    """Maps action names to :class:`Action` instances."""

    def __init__(self) -> None:
        self._actions: Dict[str, Action] = {}

    def register(self, action: Action) -> None:
        name = getattr(action, "name", None)
        if not name or not str(name).strip():
            raise ValueError("Action name is required")
        if name in self._actions:
            logger.warning(f"Action {name} is already registered. Overwriting.")
        self._actions[name] = action

    def register_many(self, actions: Iterable[Action]) -> None:
        for action in actions:
            self.register(action)

    def get(self, name: str) -> Optional[Action]:
        return self._actions.get(name)

    def has(self, name: str) -> bool:
        return name in self._actions

    def list(self) -> List[str]:
        return list(self._actions)

    def all(self) -> List[Action]:
        return list(self._actions.values())

    def unregister(self, name: str) -> bool:
        """Remove ``name``; return ``True`` if it was registered."""
        return self._actions.pop(name, None) is not None

    def clear(self) -> None:
        self._actions.clear()

    def stats(self) -> Dict[str, Any]:
        return {"total_actions": len(self._actions), "action_names": self.list()}

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, name: object) -> bool:
        return name in self._actions
