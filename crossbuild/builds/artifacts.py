"""Artifact collection and bundle staging.

This module handles:
- Resolving artifact rules against a finished build workspace
- Copying matched files and directory trees into a staging directory
- Computing checksums of staged files
- Writing a bundle manifest recording every relocation

The workspace is only read; matches are copied, never moved, so it stays
intact for diagnostics.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from crossbuild.types import CollectErrorKind, StagedFile, WorkspacePaths

if TYPE_CHECKING:
    from crossbuild.pipeline.matrix import PlatformEntry

logger = logging.getLogger(__name__)

MANIFEST_NAME = "crossbuild-manifest.json"
MANIFEST_VERSION = "1.0"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class CollectError(Exception):
    """Raised when build outputs cannot be collected."""

    def __init__(
        self,
        message: str,
        kind: CollectErrorKind = CollectErrorKind.IO_FAILURE,
        pattern: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = kind.value
        self.pattern = pattern


@dataclass(frozen=True)
class ArtifactRule:
    """Declares one expected build output.

    Attributes:
        source: Glob pattern relative to the workspace root.
        destination: Directory inside the bundle ("" is the bundle root).
        rename: New name for the match; only valid for a single match.
        required: Whether zero matches fails the entry.
    """

    source: str
    destination: str = ""
    rename: str | None = None
    required: bool = True


@dataclass(frozen=True)
class ArtifactSpec:
    """Ordered set of artifact rules, resolved in declaration order."""

    rules: tuple[ArtifactRule, ...] = ()

    def __iter__(self) -> Iterator[ArtifactRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)


@dataclass
class ArtifactBundle:
    """Staged build outputs for one platform entry.

    Attributes:
        entry: Matrix entry the bundle belongs to.
        root: Staging directory holding the files.
        files: Staged files in deterministic order.
        manifest_path: Manifest written into the bundle, if any.
    """

    entry: PlatformEntry
    root: Path
    files: list[StagedFile] = field(default_factory=list)
    manifest_path: Path | None = None

    @property
    def total_size_bytes(self) -> int:
        return sum(f.size_bytes for f in self.files)

    def iter_upload_files(self) -> Iterator[tuple[str, Path]]:
        """Yield (relative_path, absolute_path) pairs, manifest last."""
        for staged in self.files:
            yield staged.bundle_path, self.root / staged.bundle_path
        if self.manifest_path is not None:
            yield self.manifest_path.relative_to(self.root).as_posix(), self.manifest_path


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def _ensure_within(path: Path, root: Path, pattern: str) -> None:
    """Reject matches that resolve outside the workspace."""
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        raise CollectError(
            f"Artifact {path} for pattern '{pattern}' resolves outside {root}",
            kind=CollectErrorKind.PATH_ESCAPE,
            pattern=pattern,
        ) from None


def resolve_rule(workspace_root: Path, rule: ArtifactRule) -> list[Path]:
    """Resolve an artifact rule to existing workspace paths.

    Args:
        workspace_root: Root of the finished build workspace.
        rule: Rule to resolve.

    Returns:
        Sorted list of matching files and directories.

    Raises:
        CollectError: If a match resolves outside the workspace.
    """
    matches = sorted(p for p in workspace_root.glob(rule.source) if p.exists())
    for match in matches:
        _ensure_within(match, workspace_root, rule.source)
    return matches


def _walk_files(directory: Path) -> list[Path]:
    """Return all files under a directory in lexicographic order."""
    return sorted(p for p in directory.rglob("*") if p.is_file())


class ArtifactCollector:
    """Copies declared build outputs from a workspace into a bundle."""

    def __init__(self, include_manifest: bool = True) -> None:
        self.include_manifest = include_manifest

    def collect(
        self,
        workspace: WorkspacePaths,
        spec: ArtifactSpec,
        entry: PlatformEntry,
        staging_dir: Path,
    ) -> ArtifactBundle:
        """Collect build outputs for one entry.

        Args:
            workspace: Workspace of a succeeded build.
            spec: Ordered artifact rules.
            entry: Matrix entry that produced the workspace.
            staging_dir: Empty directory to stage the bundle into.

        Returns:
            ArtifactBundle with files in rule declaration order.

        Raises:
            CollectError: If a required artifact is missing or copying fails.
        """
        root = workspace.root
        staging_dir.mkdir(parents=True, exist_ok=True)
        bundle = ArtifactBundle(entry=entry, root=staging_dir)
        seen: set[str] = set()

        for rule in spec:
            matches = resolve_rule(root, rule)
            if not matches:
                if rule.required:
                    logger.error(
                        "[%s] Required artifact missing: %s",
                        entry.platform_tag,
                        rule.source,
                    )
                    raise CollectError(
                        f"Required artifact not found: '{rule.source}'",
                        kind=CollectErrorKind.MISSING_ARTIFACT,
                        pattern=rule.source,
                    )
                logger.info(
                    "[%s] Optional artifact not found, skipping: %s",
                    entry.platform_tag,
                    rule.source,
                )
                continue

            if rule.rename and len(matches) > 1:
                raise CollectError(
                    f"Pattern '{rule.source}' matched {len(matches)} paths "
                    f"but rename '{rule.rename}' needs exactly one",
                    kind=CollectErrorKind.AMBIGUOUS_RENAME,
                    pattern=rule.source,
                )

            for match in matches:
                for staged in self._stage_match(root, match, rule, staging_dir):
                    if staged.bundle_path in seen:
                        logger.warning(
                            "[%s] %s staged twice; later copy wins",
                            entry.platform_tag,
                            staged.bundle_path,
                        )
                        bundle.files = [
                            f for f in bundle.files if f.bundle_path != staged.bundle_path
                        ]
                    seen.add(staged.bundle_path)
                    bundle.files.append(staged)

        if self.include_manifest:
            manifest = generate_manifest(bundle)
            bundle.manifest_path = write_manifest(manifest, staging_dir / MANIFEST_NAME)

        logger.info(
            "[%s] Collected %d files (%d bytes)",
            entry.platform_tag,
            len(bundle.files),
            bundle.total_size_bytes,
        )
        return bundle

    def _stage_match(
        self,
        root: Path,
        match: Path,
        rule: ArtifactRule,
        staging_dir: Path,
    ) -> list[StagedFile]:
        """Copy one match (file or directory tree) into the staging dir."""
        base = PurePosixPath(rule.destination) if rule.destination else PurePosixPath()
        target_name = rule.rename or match.name

        if match.is_dir():
            pairs = []
            for f in _walk_files(match):
                _ensure_within(f, root, rule.source)
                pairs.append((f, base / target_name / f.relative_to(match).as_posix()))
        else:
            pairs = [(match, base / target_name)]

        staged: list[StagedFile] = []
        for source, bundle_rel in pairs:
            dest = staging_dir / bundle_rel
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)
                size_bytes = dest.stat().st_size
                sha256 = compute_file_hash(dest)
            except OSError as e:
                raise CollectError(
                    f"Failed to stage {source} -> {dest}: {e}",
                    kind=CollectErrorKind.IO_FAILURE,
                    pattern=rule.source,
                ) from e

            staged.append(
                StagedFile(
                    source=source.relative_to(root).as_posix(),
                    bundle_path=bundle_rel.as_posix(),
                    size_bytes=size_bytes,
                    sha256=sha256,
                )
            )
            logger.debug("Staged %s -> %s", source, bundle_rel)
        return staged


def generate_manifest(
    bundle: ArtifactBundle,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a bundle manifest.

    The manifest records where each staged file came from so the bundle
    layout can be reproduced.

    Args:
        bundle: Staged bundle.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "platform": bundle.entry.platform_tag,
        "arch": bundle.entry.arch_tag,
        "files": [asdict(f) for f in bundle.files],
        "summary": {
            "total_files": len(bundle.files),
            "total_size_bytes": bundle.total_size_bytes,
        },
    }
    if extra_metadata:
        manifest["metadata"] = extra_metadata
    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.debug("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_NAME",
    "ArtifactBundle",
    "ArtifactCollector",
    "ArtifactRule",
    "ArtifactSpec",
    "CollectError",
    "compute_file_hash",
    "generate_manifest",
    "resolve_rule",
    "write_manifest",
]
