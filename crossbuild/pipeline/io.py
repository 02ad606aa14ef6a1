"""Pipeline definition loading.

This module reads pipeline definitions from YAML/JSON files and validates
them against the schema. Relative paths inside a definition resolve
against the directory holding the file.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from crossbuild.pipeline.schema import PipelineSchema


class PipelineLoadError(Exception):
    """Raised when a pipeline definition cannot be loaded."""

    def __init__(self, message: str, code: str = "pipeline_load_error") -> None:
        super().__init__(message)
        self.code = code


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_pipeline_data(data: dict[str, Any], base_dir: Path | None = None) -> PipelineSchema:
    """Validate pipeline data and resolve its relative paths.

    Args:
        data: Dictionary containing the pipeline definition.
        base_dir: Directory that relative paths resolve against.

    Returns:
        Validated PipelineSchema with absolute entrypoint and source_root.

    Raises:
        pydantic.ValidationError: If data does not match the schema.
    """
    pipeline = PipelineSchema.model_validate(data)
    if base_dir is None:
        return pipeline
    return pipeline.model_copy(
        update={
            "entrypoint": str((base_dir / pipeline.entrypoint).resolve()),
            "source_root": str((base_dir / pipeline.source_root).resolve()),
        }
    )


def load_pipeline(path: Path) -> PipelineSchema:
    """Load and validate a pipeline definition (YAML or JSON).

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON).

    Args:
        path: Path to the pipeline file.

    Returns:
        Validated PipelineSchema instance.

    Raises:
        PipelineLoadError: If the file is missing, unreadable or invalid.
    """
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = load_yaml(path)
        elif suffix == ".json":
            data = load_json(path)
        else:
            raise PipelineLoadError(
                f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json",
                code="unsupported_format",
            )
        return parse_pipeline_data(data, base_dir=path.parent)
    except FileNotFoundError as e:
        raise PipelineLoadError(
            f"Pipeline file not found: {path}", code="not_found"
        ) from e
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise PipelineLoadError(
            f"Failed to parse {path}: {e}", code="parse_error"
        ) from e
    except ValidationError as e:
        raise PipelineLoadError(
            f"Invalid pipeline definition in {path}:\n{e}", code="validation"
        ) from e
    except ValueError as e:
        raise PipelineLoadError(str(e), code="validation") from e


def dump_pipeline_yaml(pipeline: PipelineSchema) -> str:
    """Render a pipeline definition as YAML."""
    data = pipeline.model_dump(exclude_defaults=True)
    return yaml.dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False)


__all__ = [
    "PipelineLoadError",
    "dump_pipeline_yaml",
    "load_json",
    "load_pipeline",
    "load_yaml",
    "parse_pipeline_data",
]
