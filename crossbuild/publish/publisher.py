"""Artifact publisher.

Names a staged bundle and hands it to the configured sink. Publish
failures are reported to the caller and never retried here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from crossbuild.publish.naming import NamingRule, compute_bundle_name
from crossbuild.publish.sinks import PublishError

if TYPE_CHECKING:
    from crossbuild.builds.artifacts import ArtifactBundle
    from crossbuild.publish.sinks import ArtifactSink

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    """Result of a successful publish.

    Attributes:
        bundle_name: Name the bundle was published under.
        location: Sink-specific location (directory path or URL).
        file_count: Number of files sent, including the manifest.
    """

    bundle_name: str
    location: str
    file_count: int


class ArtifactPublisher:
    """Publishes artifact bundles to a sink under deterministic names."""

    def __init__(self, sink: ArtifactSink, rule: NamingRule | None = None) -> None:
        self.sink = sink
        self.rule = rule or NamingRule()

    def bundle_name(self, bundle: ArtifactBundle) -> str:
        """Return the name a bundle will be published under."""
        return compute_bundle_name(bundle.entry, self.rule)

    def publish(self, bundle: ArtifactBundle) -> PublishResult:
        """Publish a complete bundle.

        Args:
            bundle: Staged bundle from the collector.

        Returns:
            PublishResult describing where the bundle went.

        Raises:
            PublishError: If naming fails or the sink rejects the bundle.
        """
        try:
            name = self.bundle_name(bundle)
        except ValueError as e:
            raise PublishError(str(e), code="invalid_bundle_name") from e

        files = list(bundle.iter_upload_files())
        logger.info(
            "[%s] Publishing bundle %s (%d files)",
            bundle.entry.platform_tag,
            name,
            len(files),
        )
        location = self.sink.upload(name, files)
        return PublishResult(bundle_name=name, location=location, file_count=len(files))


__all__ = ["ArtifactPublisher", "PublishResult"]
