"""Run service module.

This module provides database operations on runs:
- Creating runs with per-environment monotonic numbers
- Claiming a pending run for execution
- Cancellation requests
- Appending stage attempts
- Status queries
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from shipline.errors import PipelineError
from shipline.runs.models import PipelineRun, StageAttempt
from shipline.types import RunStatus, Stage, StageResult, Success, TriggerKind

logger = logging.getLogger(__name__)


class RunNotFoundError(Exception):
    """Raised when a run is not found."""

    def __init__(self, run_id: int, code: str = "run_not_found") -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id
        self.code = code


def next_run_number(session: Session, environment: str) -> int:
    """Return the number the next run of ``environment`` gets."""
    stmt = select(func.max(PipelineRun.number)).where(
        PipelineRun.environment == environment
    )
    current = session.execute(stmt).scalar_one_or_none()
    return (current or 0) + 1


def create_run(
    session: Session,
    environment: str,
    revision: str,
    trigger: TriggerKind = TriggerKind.MANUAL,
) -> PipelineRun:
    """Create a pending run with the next number for its environment.

    The (environment, number) unique constraint rejects a number that a
    concurrent writer took first; callers retry on IntegrityError.

    Args:
        session: Database session.
        environment: Target environment.
        revision: Revision named by the trigger.
        trigger: What caused the run.

    Returns:
        Created PipelineRun (flushed, id assigned).
    """
    run = PipelineRun(
        environment=environment,
        number=next_run_number(session, environment),
        trigger=trigger.value,
        requested_revision=revision,
        status=RunStatus.PENDING.value,
        stage=Stage.PENDING.value,
        cancel_requested=False,
    )
    session.add(run)
    session.flush()
    logger.info("Created run %s (id=%d) for %s", run.label, run.id, revision)
    return run


def get_run(session: Session, run_id: int) -> PipelineRun:
    """Get a run with its stage history.

    Raises:
        RunNotFoundError: If run not found.
    """
    stmt = (
        select(PipelineRun)
        .where(PipelineRun.id == run_id)
        .options(selectinload(PipelineRun.attempts))
    )
    run = session.execute(stmt).scalar_one_or_none()
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def list_runs(
    session: Session,
    environment: str | None = None,
    status: RunStatus | None = None,
    limit: int = 100,
) -> list[PipelineRun]:
    """List runs, newest first, with optional filters."""
    stmt = select(PipelineRun)

    if environment is not None:
        stmt = stmt.where(PipelineRun.environment == environment)
    if status is not None:
        stmt = stmt.where(PipelineRun.status == status.value)

    stmt = stmt.order_by(PipelineRun.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def unfinished_runs(session: Session, environment: str) -> list[PipelineRun]:
    """Return the pending and running runs of an environment, oldest first."""
    stmt = (
        select(PipelineRun)
        .where(
            PipelineRun.environment == environment,
            PipelineRun.status.in_(
                [RunStatus.PENDING.value, RunStatus.RUNNING.value]
            ),
        )
        .order_by(PipelineRun.id)
    )
    return list(session.execute(stmt).scalars().all())


def claim_run(session: Session, run_id: int) -> bool:
    """Atomically move a pending run to running.

    Returns:
        False if the run is no longer pending (e.g. cancelled meanwhile).
    """
    stmt = (
        update(PipelineRun)
        .where(
            PipelineRun.id == run_id,
            PipelineRun.status == RunStatus.PENDING.value,
            PipelineRun.cancel_requested.is_(False),
        )
        .values(
            status=RunStatus.RUNNING.value,
            started_at=datetime.now(timezone.utc),
        )
    )
    claimed = session.execute(stmt).rowcount == 1
    session.flush()
    return claimed


def request_cancel(session: Session, run_id: int) -> PipelineRun:
    """Request cancellation of a run.

    A pending run is cancelled on the spot. A running run gets its
    ``cancel_requested`` flag set and is finalized by its worker at the
    next stage boundary. Terminal runs are left untouched.

    Raises:
        RunNotFoundError: If run not found.
    """
    now = datetime.now(timezone.utc)
    session.execute(
        update(PipelineRun)
        .where(
            PipelineRun.id == run_id,
            PipelineRun.status == RunStatus.PENDING.value,
        )
        .values(
            status=RunStatus.CANCELLED.value,
            stage=Stage.CANCELLED.value,
            cancel_requested=True,
            finished_at=now,
        )
    )
    session.execute(
        update(PipelineRun)
        .where(
            PipelineRun.id == run_id,
            PipelineRun.status == RunStatus.RUNNING.value,
        )
        .values(cancel_requested=True)
    )
    session.flush()
    session.expire_all()
    run = get_run(session, run_id)
    logger.info("Cancellation requested for run %s (now %s)", run.label, run.status)
    return run


def is_cancel_requested(session: Session, run_id: int) -> bool:
    """Whether a cancellation was requested for a run."""
    stmt = select(PipelineRun.cancel_requested).where(PipelineRun.id == run_id)
    return bool(session.execute(stmt).scalar_one_or_none())


def record_attempt(
    session: Session,
    run: PipelineRun,
    stage: Stage,
    attempt: int,
    result: StageResult,
    started_at: datetime,
    finished_at: datetime,
) -> StageAttempt:
    """Append one stage attempt to a run's history."""
    record = StageAttempt(
        run_id=run.id,
        stage=stage.value,
        attempt=attempt,
        outcome=result.outcome.value,
        started_at=started_at,
        finished_at=finished_at,
    )
    if isinstance(result, Success):
        record.output = result.output
    else:
        record.error_kind = error_kind(result.error)
        record.message = str(result.error)
        if isinstance(result.error, PipelineError):
            record.error_code = result.error.code
            record.response = result.error.response
    session.add(record)
    session.flush()
    return record


def error_kind(error: Exception) -> str:
    """Error kind recorded for an exception."""
    if isinstance(error, PipelineError):
        return error.kind
    return "InternalError"


__all__ = [
    "RunNotFoundError",
    "claim_run",
    "create_run",
    "error_kind",
    "get_run",
    "is_cancel_requested",
    "list_runs",
    "next_run_number",
    "record_attempt",
    "request_cancel",
    "unfinished_runs",
]
