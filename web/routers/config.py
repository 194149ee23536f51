"""Configuration endpoints.

- GET /config - Effective settings, secret handles masked
- GET /config/pipeline - The pipeline definition the engine runs
"""

import json
from typing import Any

from fastapi import APIRouter, Depends

from shipline.config import Settings, print_settings_json
from shipline.runs.engine import PipelineEngine
from web.deps import get_app_settings, get_pipeline_engine

router = APIRouter()


@router.get("")
def get_config(settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    data: dict[str, Any] = json.loads(print_settings_json(settings))
    return data


@router.get("/pipeline")
def get_pipeline(
    engine: PipelineEngine = Depends(get_pipeline_engine),
) -> dict[str, Any]:
    """Return the loaded pipeline definition with per-environment branches."""
    definition = engine.definition
    data = definition.model_dump(mode="json")
    for name, environment in data["environments"].items():
        environment["branch"] = definition.manifest_branch(name)
    return data
