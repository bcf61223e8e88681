"""Step implementations and the registry used to look them up."""

from __future__ import annotations

from typing import Callable, Optional

from .base import Action, ActionInput, BaseAction, FunctionAction, ValidationResult
from .registry import ActionRegistry

# Process wide registry. Runners fall back to it when no registry is passed,
# which lets modules register their actions at import time.
REGISTRY = ActionRegistry()


def action(
    name: Optional[str] = None,
    registry: Optional[ActionRegistry] = None,
    description: Optional[str] = None,
) -> Callable:
    """Decorator registering a function as a :class:`FunctionAction`.

    The function name is used when ``name`` is omitted. The original function
    is returned unchanged so it stays directly callable in tests.
    """

    def decorator(func: Callable) -> Callable:
        target = registry if registry is not None else REGISTRY
        target.register(FunctionAction(name or func.__name__, func, description))
        return func

    return decorator


__all__ = [
    "Action",
    "ActionInput",
    "ActionRegistry",
    "BaseAction",
    "FunctionAction",
    "ValidationResult",
    "REGISTRY",
    "action",
]
