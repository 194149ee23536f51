"""Run ORM models.

This module defines the PipelineRun and StageAttempt models storing run
state and the append-only stage history.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shipline.db import Base
from shipline.types import RunStatus, Stage


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunStateError(Exception):
    """Raised on a transition that the run state machine forbids."""

    def __init__(self, message: str, code: str = "invalid_transition") -> None:
        super().__init__(message)
        self.code = code


class PipelineRun(Base):
    """ORM model for one pipeline run.

    A PipelineRun is created pending when triggered, moves through the
    stages and is finalized exactly once. Finalized runs are immutable.

    Attributes:
        id: Primary key, used by status queries.
        environment: Target environment.
        number: Monotonic run number within the environment.
        trigger: What created the run (push, manual, schedule).
        requested_revision: Revision named by the trigger.
        source_revision: Commit the revision resolved to.
        stage: Current state machine position.
        status: Run status.
        cancel_requested: Set by cancel requests from any process.
        image: Published image reference.
        manifest_commit: Manifest repository head after publishing.
        failed_stage: Stage that failed the run.
        error_kind: Error class of the failure.
        error_message: Failure message.
        last_response: Last external collaborator response.
        log_dir: Directory with retained logs.
    """

    __tablename__ = "runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    environment: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)
    requested_revision: Mapped[str] = mapped_column(String(255), nullable=False)
    source_revision: Mapped[str | None] = mapped_column(String(64), nullable=True)

    stage: Mapped[str] = mapped_column(
        String(32), nullable=False, default=Stage.PENDING.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.PENDING.value, index=True
    )
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Stage outputs
    image: Mapped[str | None] = mapped_column(String(500), nullable=True)
    manifest_commit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    log_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    failed_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_response: Mapped[str | None] = mapped_column(Text, nullable=True)

    attempts: Mapped[list["StageAttempt"]] = relationship(
        "StageAttempt",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="StageAttempt.id",
    )

    __table_args__ = (
        UniqueConstraint("environment", "number", name="uq_runs_environment_number"),
        Index("ix_runs_environment_status", "environment", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of PipelineRun."""
        return (
            f"<PipelineRun(id={self.id}, environment='{self.environment}', "
            f"number={self.number}, status='{self.status}', stage='{self.stage}')>"
        )

    @property
    def tag(self) -> str:
        """Image tag of this run, unique within its environment."""
        return f"{self.environment}-{self.number}"

    @property
    def label(self) -> str:
        """Human-readable run label, e.g. ``staging#12``."""
        return f"{self.environment}#{self.number}"

    @property
    def is_terminal(self) -> bool:
        return RunStatus(self.status).is_terminal

    def _ensure_active(self) -> None:
        if self.is_terminal:
            raise RunStateError(
                f"Run {self.label} is already {self.status}",
                code="run_finalized",
            )

    def enter_stage(self, stage: Stage) -> None:
        """Move to the next working stage."""
        self._ensure_active()
        if self.status != RunStatus.RUNNING.value:
            raise RunStateError(f"Run {self.label} is not running")
        self.stage = stage.value

    def mark_succeeded(self) -> None:
        """Mark this run as succeeded."""
        self._ensure_active()
        self.status = RunStatus.SUCCEEDED.value
        self.stage = Stage.SUCCEEDED.value
        self.finished_at = _now()

    def mark_failed(
        self,
        stage: Stage,
        error_kind: str,
        message: str,
        response: str | None = None,
    ) -> None:
        """Mark this run as failed at ``stage``."""
        self._ensure_active()
        self.status = RunStatus.FAILED.value
        self.failed_stage = stage.value
        self.stage = Stage.FAILED.value
        self.error_kind = error_kind
        self.error_message = message
        self.last_response = response
        self.finished_at = _now()

    def mark_cancelled(self) -> None:
        """Mark this run as cancelled."""
        self._ensure_active()
        self.status = RunStatus.CANCELLED.value
        self.stage = Stage.CANCELLED.value
        self.finished_at = _now()

    def to_dict(self, include_attempts: bool = True) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        data: dict[str, Any] = {
            "id": self.id,
            "environment": self.environment,
            "number": self.number,
            "tag": self.tag,
            "trigger": self.trigger,
            "requested_revision": self.requested_revision,
            "source_revision": self.source_revision,
            "stage": self.stage,
            "status": self.status,
            "cancel_requested": self.cancel_requested,
            "requested_at": self.requested_at.isoformat()
            if self.requested_at
            else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "image": self.image,
            "manifest_commit": self.manifest_commit,
            "log_dir": self.log_dir,
            "failed_stage": self.failed_stage,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "last_response": self.last_response,
        }
        if include_attempts:
            data["attempts"] = [a.to_dict() for a in self.attempts]
        return data


class StageAttempt(Base):
    """ORM model for one attempt of one stage.

    Attempts are appended as they finish and never modified afterwards.

    Attributes:
        id: Primary key.
        run_id: Foreign key to PipelineRun.
        stage: Stage attempted.
        attempt: 1-based attempt number within the stage.
        outcome: success, retryable or fatal.
        error_kind: Error class for failed attempts.
        error_code: Machine-readable error code.
        message: Error message.
        response: Tail of the collaborator response.
        output: JSON output of a successful attempt.
    """

    __tablename__ = "stage_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("runs.id"), nullable=False, index=True
    )
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    response: Mapped[str | None] = mapped_column(Text, nullable=True)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    run: Mapped["PipelineRun"] = relationship("PipelineRun", back_populates="attempts")

    def __repr__(self) -> str:
        """Return string representation of StageAttempt."""
        return (
            f"<StageAttempt(run_id={self.run_id}, stage='{self.stage}', "
            f"attempt={self.attempt}, outcome='{self.outcome}')>"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "stage": self.stage,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "error_kind": self.error_kind,
            "error_code": self.error_code,
            "message": self.message,
            "response": self.response,
            "output": self.output,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
        }


__all__ = ["PipelineRun", "RunStateError", "StageAttempt"]
