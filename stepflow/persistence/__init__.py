"""Persistence layer for stepflow workflow state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepflowConfig, load_config
from .inmemory import InMemoryStatePersistence
from .repository import StatePersistence
from .sqlite import SQLiteStatePersistence

_persistence_instance: StatePersistence | None = None


def get_persistence(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> StatePersistence:
    """Factory function to obtain a state persistence backend.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``STEPFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory backend is returned.
    """

    global _persistence_instance
    if _persistence_instance is not None and database_url is None and config is None:
        return _persistence_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("STEPFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _persistence_instance = InMemoryStatePersistence()
        return _persistence_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _persistence_instance = SQLiteStatePersistence(path)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _persistence_instance


def reset_persistence() -> None:
    """Forget the cached backend returned by :func:`get_persistence`."""
    global _persistence_instance
    _persistence_instance = None


__all__ = [
    "StatePersistence",
    "InMemoryStatePersistence",
    "SQLiteStatePersistence",
    "get_persistence",
    "reset_persistence",
]
