"""Platform matrix for a build run.

A matrix is the ordered set of (platform, architecture) pairs a run builds
for. Entries can be declared without being activated: disabled entries are
kept for listing but never reach provisioning, building or collection.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

DEFAULT_PLATFORM_FAMILY = "linux"


def normalize_platform_tag(tag: str) -> str:
    """Normalize a container platform tag.

    Tags without an OS part (``amd64``) get the default family prepended,
    matching the container runtime default.

    Args:
        tag: Platform tag such as ``amd64`` or ``linux/arm64/v8``.

    Returns:
        Normalized tag such as ``linux/amd64``.

    Raises:
        ValueError: If the tag is empty or has empty components.
    """
    tag = tag.strip()
    if not tag:
        raise ValueError("platform tag must not be empty")
    if "/" not in tag:
        tag = f"{DEFAULT_PLATFORM_FAMILY}/{tag}"
    if any(not part for part in tag.split("/")):
        raise ValueError(f"invalid platform tag: '{tag}'")
    return tag


@dataclass(frozen=True)
class PlatformEntry:
    """A single (platform, architecture) pair in the matrix.

    Attributes:
        platform_tag: Container platform constraint, e.g. ``linux/amd64``.
        arch_tag: CPU architecture name, e.g. ``x86_64``.
        enabled: Whether the entry takes part in runs.
    """

    platform_tag: str
    arch_tag: str
    enabled: bool = True

    @property
    def platform_family(self) -> str:
        """OS family of the platform tag (``linux`` for ``linux/amd64``)."""
        return self.platform_tag.split("/", 1)[0]

    @property
    def slug(self) -> str:
        """Filesystem-safe identifier for the entry."""
        return self.platform_tag.replace("/", "-")


class PlatformMatrix:
    """Ordered collection of platform entries with unique platform tags."""

    def __init__(self, entries: Iterable[PlatformEntry] = ()) -> None:
        self._entries: list[PlatformEntry] = []
        seen: set[str] = set()
        for entry in entries:
            if entry.platform_tag in seen:
                raise ValueError(f"duplicate platform tag: '{entry.platform_tag}'")
            seen.add(entry.platform_tag)
            self._entries.append(entry)

    def __len__(self) -> int:
        return len(self.entries())

    def declared(self) -> list[PlatformEntry]:
        """Return all declared entries, including disabled ones."""
        return list(self._entries)

    def entries(self) -> list[PlatformEntry]:
        """Return enabled entries in declaration order."""
        return [e for e in self._entries if e.enabled]

    def is_enabled(self, entry: PlatformEntry) -> bool:
        """Check whether an entry is declared in this matrix and enabled."""
        return entry in self._entries and entry.enabled

    def select(self, platform_tags: Sequence[str]) -> PlatformMatrix:
        """Narrow the matrix to a subset of enabled platforms.

        Args:
            platform_tags: Platform tags to keep (normalized before matching).

        Returns:
            New matrix containing only the selected enabled entries.

        Raises:
            ValueError: If a tag does not name an enabled entry.
        """
        wanted = [normalize_platform_tag(t) for t in platform_tags]
        enabled = {e.platform_tag: e for e in self.entries()}
        unknown = [t for t in wanted if t not in enabled]
        if unknown:
            raise ValueError(
                f"unknown or disabled platform(s): {', '.join(unknown)}"
            )
        return PlatformMatrix(e for e in self.entries() if e.platform_tag in wanted)


__all__ = [
    "DEFAULT_PLATFORM_FAMILY",
    "PlatformEntry",
    "PlatformMatrix",
    "normalize_platform_tag",
]
