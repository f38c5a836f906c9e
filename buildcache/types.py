"""Shared type definitions for buildcache.

This module contains enums and dataclasses shared across subpackages to avoid
circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class OrchestratorState(str, Enum):
    """State of a build-and-cache run."""

    IDLE = "idle"
    BUILDING = "building"
    BUILT = "built"
    RESOLVING = "resolving"
    PUBLISHING = "publishing"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DONE = "done"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OrchestratorState.FAILED,
            OrchestratorState.CANCELLED,
            OrchestratorState.DONE,
        )


class Architecture(str, Enum):
    """Architectures a multi-arch manifest list is assembled from."""

    AMD64 = "amd64"
    ARM64 = "arm64"


class ArtifactKind(str, Enum):
    """Kind of artifact a pipeline job hands off to later stages."""

    BINARY = "binary"
    CONTAINER_IMAGE = "container-image"
    PACKAGE = "package"


class TagKind(str, Enum):
    """Human-meaningful tags a manifest list is pushed under."""

    COMMIT = "commit"
    REF = "ref"
    LATEST = "latest"


class RegistryStatus(str, Enum):
    """Outcome of publishing to a single registry."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class OperationResult:
    """Result of an operation surfaced to the CLI."""

    success: bool
    message: str
    code: str | None = None
    log_path: str | None = None
    details: dict[str, object] = field(default_factory=dict)


__all__ = [
    "Architecture",
    "ArtifactKind",
    "OperationResult",
    "OrchestratorState",
    "RegistryStatus",
    "TagKind",
]
