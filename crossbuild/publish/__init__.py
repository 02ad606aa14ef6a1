"""Bundle publishing module.

This module handles:
- Deterministic bundle naming
- Sinks that store bundles (directory, HTTP)
- Publishing staged bundles to a sink
"""

from crossbuild.publish.naming import NamingRule, compute_bundle_name
from crossbuild.publish.publisher import ArtifactPublisher, PublishResult
from crossbuild.publish.sinks import (
    ArtifactSink,
    DirectorySink,
    HttpSink,
    PublishError,
    make_sink,
)

__all__ = [
    "ArtifactPublisher",
    "ArtifactSink",
    "DirectorySink",
    "HttpSink",
    "NamingRule",
    "PublishError",
    "PublishResult",
    "compute_bundle_name",
    "make_sink",
]
