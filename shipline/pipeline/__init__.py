"""Pipeline definition loading and validation."""

from shipline.pipeline.schema import PipelineDefinition

__all__ = ["PipelineDefinition"]
