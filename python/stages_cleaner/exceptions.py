"""
Fatal errors of a cleanup run.

Any of these aborts the run: the coordinator marks the report failed,
releases the project lock and returns what was done so far. Single-item
deletion failures are not exceptions; they are collected as ``ItemError``
records in the phase results.
"""

from typing import Any, Dict, List, Optional

from cleaner_utils.error_utils import (
    ActionableError,
    ErrorCategory,
    git_repository_guidance,
    kubernetes_guidance,
    registry_connection_guidance,
)
from cleaner_utils.lock_manager import LockUnavailableError


class CleanupFatalError(ActionableError):
    """Base class for errors that abort a cleanup run"""


class RegistryUnavailableError(CleanupFatalError):
    """Listing or inspecting the images repo failed"""

    @classmethod
    def from_error(cls, repository: str, error: Exception) -> "RegistryUnavailableError":
        if isinstance(error, ActionableError):
            return cls(error.message, error.category, error.suggestions, error.details)
        return cls(**registry_connection_guidance(repository, error))


class StorageUnavailableError(CleanupFatalError):
    """Listing the stages storage failed"""

    @classmethod
    def from_error(cls, storage: str, error: Exception) -> "StorageUnavailableError":
        if isinstance(error, ActionableError):
            return cls(
                f"Cannot list stages storage {storage}: {error.message}",
                error.category,
                error.suggestions,
                error.details,
            )
        guidance = registry_connection_guidance(storage, error)
        guidance["message"] = f"Cannot list stages storage {storage}"
        return cls(**guidance)


class GitRepositoryError(CleanupFatalError):
    """The project repository exists but cannot be read"""

    def __init__(self, project_dir: str, error: Exception):
        self.project_dir = project_dir
        super().__init__(**git_repository_guidance(project_dir, error))


class ClusterUnavailableError(CleanupFatalError):
    """A kubernetes context could not be scanned at all"""

    def __init__(self, operation: str, error: Exception):
        super().__init__(**kubernetes_guidance(operation, error))


class StageGraphCycleError(CleanupFatalError):
    """Stage parent links form a cycle"""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            message=f"Stage parent chain contains a cycle: {' -> '.join(self.cycle)}",
            category=ErrorCategory.CORRUPTION,
            suggestions=[
                "Inspect the werf-parent-stage-digest labels of the listed stages",
                "Remove the corrupted stages manually, then rerun cleanup",
            ],
            details={"cycle_length": len(self.cycle)},
        )


class PhaseFailedError(CleanupFatalError):
    """Every deletion attempted in a phase failed"""

    def __init__(self, phase: str, attempted: int, result: Any = None, first_error: Optional[str] = None):
        self.phase = phase
        self.result = result
        details: Dict[str, Any] = {"phase": phase, "attempted": attempted}
        if first_error:
            details["first_error"] = first_error
        super().__init__(
            message=f"All {attempted} deletions in the {phase} phase failed",
            category=ErrorCategory.CONNECTION,
            suggestions=[
                "Verify the credentials allow deleting from the repository",
                "Check that the registry has deletion enabled",
                "Rerun with --dry-run to review what would be deleted",
            ],
            details=details,
        )


class ProjectConfigError(CleanupFatalError):
    """The project configuration file is missing or invalid"""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(
            message=f"Invalid project configuration {path}: {reason}",
            category=ErrorCategory.CONFIGURATION,
            suggestions=[
                "Run cleanup from the project directory or pass --dir",
                "Verify werf.yaml has a meta document with 'project:' set",
            ],
            details={"path": path, "reason": reason},
        )


FATAL_ERRORS = (CleanupFatalError, LockUnavailableError)

__all__ = [
    "CleanupFatalError",
    "ClusterUnavailableError",
    "FATAL_ERRORS",
    "GitRepositoryError",
    "LockUnavailableError",
    "PhaseFailedError",
    "ProjectConfigError",
    "RegistryUnavailableError",
    "StageGraphCycleError",
    "StorageUnavailableError",
]
