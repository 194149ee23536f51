"""Run endpoints.

- POST /runs - Trigger a run
- GET /runs - List runs
- GET /runs/{id} - Get a run with its stage history
- POST /runs/{id}/cancel - Request cancellation
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from shipline.runs.engine import (
    EngineClosedError,
    PipelineEngine,
    UnknownEnvironmentError,
)
from shipline.runs.service import RunNotFoundError, get_run, list_runs
from shipline.types import RunStatus, TriggerKind
from web.deps import get_db, get_pipeline_engine

router = APIRouter()


class TriggerRequest(BaseModel):
    """Request body for triggering a run."""

    environment: str = Field(description="Target environment")
    revision: str | None = Field(
        default=None, description="Source revision; pipeline default if omitted"
    )
    trigger: TriggerKind = TriggerKind.MANUAL


def _not_found(run_id: int) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={
            "code": "run_not_found",
            "message": f"Run not found: {run_id}",
        },
    )


@router.post("", status_code=http_status.HTTP_202_ACCEPTED)
def trigger_run_endpoint(
    request: TriggerRequest,
    engine: PipelineEngine = Depends(get_pipeline_engine),
) -> dict[str, Any]:
    """Trigger a run.

    The run is queued behind earlier runs of the same environment and
    executes in the background.

    Returns:
        The pending run.
    """
    try:
        run_id = engine.trigger(
            request.environment, revision=request.revision, trigger=request.trigger
        )
    except UnknownEnvironmentError as e:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except EngineClosedError as e:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return engine.status(run_id)


@router.get("")
def list_runs_endpoint(
    environment: str | None = Query(None, description="Filter by environment"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List runs, newest first."""
    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in RunStatus)
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: {valid}",
                },
            ) from None

    runs = list_runs(db, environment=environment, status=status_filter, limit=limit)
    return [r.to_dict(include_attempts=False) for r in runs]


@router.get("/{run_id}")
def get_run_endpoint(
    run_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a run with its stage history.

    Raises:
        HTTPException: If run not found.
    """
    try:
        return get_run(db, run_id).to_dict()
    except RunNotFoundError:
        raise _not_found(run_id) from None


@router.post("/{run_id}/cancel")
def cancel_run_endpoint(
    run_id: int,
    engine: PipelineEngine = Depends(get_pipeline_engine),
) -> dict[str, Any]:
    """Request cancellation of a run.

    Pending runs are cancelled immediately; running runs stop at the next
    stage boundary. Cancelling a finished run is a no-op.

    Raises:
        HTTPException: If run not found.
    """
    try:
        engine.cancel(run_id)
        return engine.status(run_id)
    except RunNotFoundError:
        raise _not_found(run_id) from None
