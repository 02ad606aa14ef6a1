"""Shared type definitions for crossbuild.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class BuildStatus(str, Enum):
    """Status of a single platform build job."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EntryStatus(str, Enum):
    """Final outcome of a matrix entry in a run report."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Stage(str, Enum):
    """Pipeline stage at which an entry finished."""

    PREPARE = "prepare"
    BUILD = "build"
    COLLECT = "collect"
    PUBLISH = "publish"


class BuildErrorKind(str, Enum):
    """Kinds of container build failure."""

    BUILD_FAILED = "build_failed"
    TIMEOUT = "timeout"
    LAUNCH_FAILED = "launch_failed"
    CANCELLED = "cancelled"


class CollectErrorKind(str, Enum):
    """Kinds of artifact collection failure."""

    MISSING_ARTIFACT = "missing_artifact"
    IO_FAILURE = "io_failure"
    PATH_ESCAPE = "path_escape"
    AMBIGUOUS_RENAME = "ambiguous_rename"


@dataclass(frozen=True)
class WorkspacePaths:
    """Host-visible locations produced by a container build.

    Attributes:
        root: Workspace directory mounted read-write into the container.
        log_path: File holding the captured container output.
    """

    root: Path
    log_path: Path


@dataclass(frozen=True)
class StagedFile:
    """A file copied from a workspace into a staged bundle.

    Attributes:
        source: Path relative to the workspace root.
        bundle_path: Path relative to the bundle root.
        size_bytes: File size.
        sha256: SHA-256 hex digest of the content.
    """

    source: str
    bundle_path: str
    size_bytes: int
    sha256: str


__all__ = [
    "BuildErrorKind",
    "BuildStatus",
    "CollectErrorKind",
    "EntryStatus",
    "Stage",
    "StagedFile",
    "WorkspacePaths",
]
