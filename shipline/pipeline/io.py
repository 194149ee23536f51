"""Pipeline definition loading.

Definitions are YAML files validated against
``shipline.pipeline.schema.PipelineDefinition``.
"""

from pathlib import Path
from typing import Any

import yaml

from shipline.pipeline.schema import PipelineDefinition


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


def parse_pipeline_data(data: dict[str, Any]) -> PipelineDefinition:
    """Validate pipeline data.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    return PipelineDefinition.model_validate(data)


def load_pipeline(path: Path) -> PipelineDefinition:
    """Load and validate a pipeline definition from a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Validated PipelineDefinition instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If data does not match schema.
        ValueError: If YAML content is not a mapping.
    """
    return parse_pipeline_data(load_yaml(path))


__all__ = ["load_pipeline", "load_yaml", "parse_pipeline_data"]
