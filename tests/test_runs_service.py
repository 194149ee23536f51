"""Tests for runs/service.py and runs/models.py modules."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from shipline.db import Base
from shipline.errors import ConflictError, NetworkError
from shipline.runs.models import PipelineRun, RunStateError
from shipline.runs.service import (
    RunNotFoundError,
    claim_run,
    create_run,
    error_kind,
    get_run,
    is_cancel_requested,
    list_runs,
    next_run_number,
    record_attempt,
    request_cancel,
)
from shipline.types import Fatal, Retryable, RunStatus, Stage, Success, TriggerKind


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session(engine):
    """Create a session for testing."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


def now() -> datetime:
    return datetime.now(timezone.utc)


class TestCreateRun:
    """Tests for run creation and numbering."""

    def test_first_run_is_number_one(self, session):
        run = create_run(session, "staging", "main")

        assert run.id is not None
        assert run.number == 1
        assert run.tag == "staging-1"
        assert run.label == "staging#1"
        assert run.status == RunStatus.PENDING.value
        assert run.stage == Stage.PENDING.value
        assert run.trigger == "manual"

    def test_numbers_monotonic_per_environment(self, session):
        create_run(session, "staging", "main")
        create_run(session, "staging", "main")
        create_run(session, "production", "v1", TriggerKind.SCHEDULE)

        assert next_run_number(session, "staging") == 3
        assert next_run_number(session, "production") == 2
        assert next_run_number(session, "qa") == 1

    def test_duplicate_number_rejected(self, session):
        """The (environment, number) constraint backs tag uniqueness."""
        create_run(session, "staging", "main")
        session.add(
            PipelineRun(
                environment="staging",
                number=1,
                trigger="manual",
                requested_revision="main",
            )
        )
        with pytest.raises(IntegrityError):
            session.flush()


class TestQueries:
    """Tests for get_run and list_runs."""

    def test_get_run(self, session):
        run = create_run(session, "staging", "main")
        assert get_run(session, run.id) is run

    def test_get_run_not_found(self, session):
        with pytest.raises(RunNotFoundError) as exc_info:
            get_run(session, 999)
        assert exc_info.value.code == "run_not_found"

    def test_list_runs_filters(self, session):
        a = create_run(session, "staging", "main")
        b = create_run(session, "production", "main")
        c = create_run(session, "staging", "main")
        a.status = RunStatus.FAILED.value
        session.flush()

        assert [r.id for r in list_runs(session)] == [c.id, b.id, a.id]
        assert [r.id for r in list_runs(session, environment="staging")] == [
            c.id,
            a.id,
        ]
        assert [r.id for r in list_runs(session, status=RunStatus.FAILED)] == [a.id]
        assert len(list_runs(session, limit=2)) == 2


class TestClaimAndCancel:
    """Tests for claim_run and request_cancel."""

    def test_claim_pending_run(self, session):
        run = create_run(session, "staging", "main")

        assert claim_run(session, run.id)
        session.refresh(run)
        assert run.status == RunStatus.RUNNING.value
        assert run.started_at is not None

    def test_claim_only_once(self, session):
        run = create_run(session, "staging", "main")
        assert claim_run(session, run.id)
        assert not claim_run(session, run.id)

    def test_cancel_pending_run(self, session):
        """A pending run is cancelled on the spot and cannot be claimed."""
        run = create_run(session, "staging", "main")

        cancelled = request_cancel(session, run.id)

        assert cancelled.status == RunStatus.CANCELLED.value
        assert cancelled.stage == Stage.CANCELLED.value
        assert cancelled.finished_at is not None
        assert not claim_run(session, run.id)

    def test_cancel_running_run_sets_flag(self, session):
        run = create_run(session, "staging", "main")
        claim_run(session, run.id)

        result = request_cancel(session, run.id)

        assert result.status == RunStatus.RUNNING.value
        assert result.cancel_requested
        assert is_cancel_requested(session, run.id)

    def test_cancel_finished_run_untouched(self, session):
        run = create_run(session, "staging", "main")
        claim_run(session, run.id)
        session.refresh(run)
        run.mark_succeeded()
        session.flush()

        result = request_cancel(session, run.id)
        assert result.status == RunStatus.SUCCEEDED.value
        assert not result.cancel_requested

    def test_cancel_unknown_run(self, session):
        with pytest.raises(RunNotFoundError):
            request_cancel(session, 42)


class TestRecordAttempt:
    """Tests for record_attempt and stage history."""

    def test_success_attempt(self, session):
        run = create_run(session, "staging", "main")
        record_attempt(
            session, run, Stage.CHECKOUT, 1, Success({"sha": "abc"}), now(), now()
        )

        session.refresh(run)
        history = run.to_dict()["attempts"]
        assert len(history) == 1
        assert history[0]["stage"] == "checkout"
        assert history[0]["outcome"] == "success"
        assert history[0]["output"] == {"sha": "abc"}
        assert history[0]["error_kind"] is None

    def test_failed_attempts_keep_error_details(self, session):
        run = create_run(session, "staging", "main")
        error = NetworkError("push failed", response="connection reset", code="x")
        record_attempt(
            session, run, Stage.PUBLISHING_IMAGE, 1, Retryable(error), now(), now()
        )
        record_attempt(
            session,
            run,
            Stage.PUBLISHING_IMAGE,
            2,
            Fatal(RuntimeError("boom")),
            now(),
            now(),
        )

        session.refresh(run)
        first, second = run.to_dict()["attempts"]
        assert first["outcome"] == "retryable"
        assert first["error_kind"] == "NetworkError"
        assert first["error_code"] == "x"
        assert first["response"] == "connection reset"
        assert second["outcome"] == "fatal"
        assert second["error_kind"] == "InternalError"
        assert second["message"] == "boom"

    def test_error_kind(self):
        assert error_kind(ConflictError("moved")) == "ConflictError"
        assert error_kind(ValueError("x")) == "InternalError"


class TestRunTransitions:
    """Tests for PipelineRun state transitions."""

    def test_finalized_run_is_immutable(self, session):
        run = create_run(session, "staging", "main")
        claim_run(session, run.id)
        session.refresh(run)
        run.enter_stage(Stage.CHECKOUT)
        run.mark_failed(Stage.CHECKOUT, "AuthError", "denied", "403")

        assert run.status == RunStatus.FAILED.value
        assert run.failed_stage == "checkout"
        assert run.last_response == "403"
        with pytest.raises(RunStateError) as exc_info:
            run.mark_succeeded()
        assert exc_info.value.code == "run_finalized"
        with pytest.raises(RunStateError):
            run.mark_cancelled()

    def test_enter_stage_requires_running(self, session):
        run = create_run(session, "staging", "main")
        with pytest.raises(RunStateError):
            run.enter_stage(Stage.CHECKOUT)

    def test_to_dict_without_attempts(self, session):
        run = create_run(session, "staging", "main")
        data = run.to_dict(include_attempts=False)

        assert "attempts" not in data
        assert data["tag"] == "staging-1"
        assert data["requested_at"] is not None
