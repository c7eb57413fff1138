"""Storage module: epoch-based persistence of top picks."""

from typing import Dict, Any

from .base import (
    ANY_EPOCH,
    Epoch,
    EpochPointer,
    EpochState,
    TopPicksStore,
    validate_entries
)
from .memory import InMemoryTopPicksStore
from .file_store import JsonFileTopPicksStore


def create_store_from_config(config: Dict[str, Any]) -> TopPicksStore:
    """
    Factory function to create a store from config.

    Args:
        config: Main configuration dictionary (uses the "storage" section)

    Returns:
        Configured TopPicksStore instance
    """
    storage_config = config.get("storage", {})
    backend = storage_config.get("backend", "memory")

    if backend == "memory":
        return InMemoryTopPicksStore()
    if backend == "file":
        path = storage_config.get("path")
        if not path:
            raise ValueError("storage.path is required for the file backend")
        return JsonFileTopPicksStore(path)
    raise ValueError(f"Unknown storage backend: {backend}")


__all__ = [
    "ANY_EPOCH",
    "Epoch",
    "EpochPointer",
    "EpochState",
    "TopPicksStore",
    "InMemoryTopPicksStore",
    "JsonFileTopPicksStore",
    "create_store_from_config",
    "validate_entries"
]
