"""
Forge module for the keel project.

State snapshots and their stores live here; the plan executor is in
keel.forge.executor (imported directly, it depends on keel.assembly).
"""

from .state import (
    FileStateStore,
    MemoryStateStore,
    ResourceState,
    RetiredResource,
    StateSnapshot,
    StateStore,
)

__all__ = [
    "FileStateStore",
    "MemoryStateStore",
    "ResourceState",
    "RetiredResource",
    "StateSnapshot",
    "StateStore",
]
