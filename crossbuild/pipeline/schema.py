"""Pydantic models for pipeline definition files.

A pipeline file declares the build image, the entrypoint script, the
platform matrix, the artifacts to harvest from a successful build and the
naming rule for published bundles.
"""

import re
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from crossbuild.builds.artifacts import ArtifactRule, ArtifactSpec
from crossbuild.pipeline.matrix import PlatformEntry, PlatformMatrix, normalize_platform_tag
from crossbuild.publish.naming import NamingRule, validate_template

PIPELINE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PlatformEntrySchema(BaseModel):
    """Schema for a matrix entry.

    Attributes:
        platform: Container platform (``amd64`` or ``linux/arm64``).
        arch: CPU architecture name used in bundle names.
        enabled: Declared but inactive entries set this to false.
    """

    model_config = ConfigDict(extra="forbid")

    platform: Annotated[str, Field(min_length=1, max_length=100)]
    arch: Annotated[str, Field(min_length=1, max_length=50)]
    enabled: bool = True

    @field_validator("platform")
    @classmethod
    def validate_platform(cls, v: str) -> str:
        """Normalize the platform tag."""
        return normalize_platform_tag(v)

    @field_validator("arch")
    @classmethod
    def validate_arch(cls, v: str) -> str:
        """Validate arch is a single path-safe token."""
        if not PIPELINE_NAME_PATTERN.match(v):
            raise ValueError(f"arch must match {PIPELINE_NAME_PATTERN.pattern}, got '{v}'")
        return v


class ArtifactRuleSchema(BaseModel):
    """Schema for an artifact harvesting rule.

    Attributes:
        source: Glob pattern relative to the workspace root.
        destination: Directory inside the bundle (bundle root if empty).
        rename: New name for a single matched path.
        required: Fail the entry when the pattern matches nothing.
    """

    model_config = ConfigDict(extra="forbid")

    source: Annotated[str, Field(min_length=1)]
    destination: str = ""
    rename: str | None = None
    required: bool = True

    @field_validator("source", "destination")
    @classmethod
    def validate_relative(cls, v: str) -> str:
        """Reject absolute paths and parent traversal."""
        if v.startswith("/") or ".." in Path(v).parts:
            raise ValueError(f"path must be relative and stay inside its root, got '{v}'")
        return v

    @field_validator("rename")
    @classmethod
    def validate_rename(cls, v: str | None) -> str | None:
        """Validate rename is a plain file name."""
        if v is None:
            return v
        if not v or "/" in v or v in (".", ".."):
            raise ValueError(f"rename must be a plain file name, got '{v}'")
        return v


class NamingSchema(BaseModel):
    """Schema for bundle naming."""

    model_config = ConfigDict(extra="forbid")

    template: str = "{arch}-{family}"
    prefix: str | None = None
    version: str | None = None

    @field_validator("template")
    @classmethod
    def check_template(cls, v: str) -> str:
        """Validate template placeholders."""
        validate_template(v)
        return v


class PipelineSchema(BaseModel):
    """Complete pipeline definition.

    Attributes:
        name: Pipeline identifier.
        image: Prebuilt build-environment image reference.
        entrypoint: Build script mounted read-only into the container.
        source_root: Source tree mounted read-write into the container.
        matrix: Platform entries.
        artifacts: Ordered artifact rules.
        naming: Bundle naming rule.
        env: Extra environment variables passed to the container.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    image: Annotated[str, Field(min_length=1)]
    entrypoint: Annotated[str, Field(min_length=1)]
    source_root: str = "."
    matrix: list[PlatformEntrySchema] = Field(default_factory=list)
    artifacts: list[ArtifactRuleSchema] = Field(default_factory=list)
    naming: NamingSchema = Field(default_factory=NamingSchema)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name matches safe pattern."""
        if not PIPELINE_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match pattern {PIPELINE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate environment variable names."""
        for key in v:
            if not ENV_NAME_PATTERN.match(key):
                raise ValueError(f"invalid environment variable name: '{key}'")
        return v

    @model_validator(mode="after")
    def validate_unique_platforms(self) -> "PipelineSchema":
        """Ensure no two matrix entries share a platform tag."""
        seen: set[str] = set()
        for entry in self.matrix:
            if entry.platform in seen:
                raise ValueError(f"duplicate platform in matrix: '{entry.platform}'")
            seen.add(entry.platform)
        return self

    def to_matrix(self) -> PlatformMatrix:
        """Build the runtime platform matrix."""
        return PlatformMatrix(
            PlatformEntry(platform_tag=e.platform, arch_tag=e.arch, enabled=e.enabled)
            for e in self.matrix
        )

    def to_artifact_spec(self) -> ArtifactSpec:
        """Build the ordered artifact spec."""
        return ArtifactSpec(
            tuple(
                ArtifactRule(
                    source=r.source,
                    destination=r.destination,
                    rename=r.rename,
                    required=r.required,
                )
                for r in self.artifacts
            )
        )

    def to_naming_rule(self) -> NamingRule:
        """Build the bundle naming rule."""
        return NamingRule(
            template=self.naming.template,
            prefix=self.naming.prefix,
            version=self.naming.version,
        )


__all__ = [
    "ArtifactRuleSchema",
    "NamingSchema",
    "PipelineSchema",
    "PlatformEntrySchema",
]
