"""Health check endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Response
from fastapi import status as http_status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shipline import __version__
from shipline.runs.engine import PipelineEngine
from web.deps import get_db, get_pipeline_engine

router = APIRouter()


@router.get("/health")
def health(
    response: Response,
    db: Session = Depends(get_db),
    engine: PipelineEngine = Depends(get_pipeline_engine),
) -> dict[str, Any]:
    """Report whether the run database answers.

    Returns 503 when it does not, so a load balancer stops routing
    triggers to this instance.
    """
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        database = "unavailable"
        response.status_code = http_status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "ok" if database == "ok" else "degraded",
        "version": __version__,
        "database": database,
        "pipeline": engine.definition.name,
        "environments": sorted(engine.definition.environments),
    }


@router.get("/")
def root() -> dict[str, str]:
    return {"name": "Shipline API", "version": __version__}
