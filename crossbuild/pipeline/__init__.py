"""Pipeline definition module.

This module handles:
- The platform matrix (enabled and declared-only entries)
- Validation of pipeline definition files
- Loading definitions from YAML/JSON
"""

from crossbuild.pipeline.io import PipelineLoadError, load_pipeline
from crossbuild.pipeline.matrix import PlatformEntry, PlatformMatrix
from crossbuild.pipeline.schema import PipelineSchema

__all__ = [
    "PipelineLoadError",
    "PipelineSchema",
    "PlatformEntry",
    "PlatformMatrix",
    "load_pipeline",
]
