"""Artifact lifecycle: paths, atomic writes, invalidation and run locks."""

from src.rpi.artifacts.locks import (
    LOCK_FILE_NAME,
    RunLock,
    RunLockedError,
    get_lock_holder,
    is_locked,
    is_stale,
)
from src.rpi.artifacts.manager import (
    ARTIFACT_FILE_NAMES,
    ArtifactLifecycleManager,
    DependencyViolationError,
)

__all__ = [
    "ARTIFACT_FILE_NAMES",
    "ArtifactLifecycleManager",
    "DependencyViolationError",
    "LOCK_FILE_NAME",
    "RunLock",
    "RunLockedError",
    "get_lock_holder",
    "is_locked",
    "is_stale",
]
