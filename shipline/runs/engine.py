"""Pipeline engine: the run state machine.

This module handles:
- Creating runs from triggers and queueing them per environment
- One worker thread per environment; environments run in parallel
- Executing the stages in order with bounded, backed-off retries
- Recording every stage attempt before deciding to retry or stop
- Cancellation at stage boundaries and between retry attempts
- Failing runs a previous process left unfinished
- Status queries

Stage order: checkout -> building -> publishing_image -> patching_manifest
-> publishing_manifest. A retryable failure repeats the same stage until
its budget is spent, then counts as fatal. A fatal failure skips all
remaining stages.
"""

from __future__ import annotations

import logging
import queue
import shutil
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from shipline.builds.runner import ArtifactBuilder
from shipline.config import Settings, get_settings
from shipline.db import get_session
from shipline.errors import PipelineError
from shipline.images.publisher import ImagePublisher
from shipline.manifests.document import ManifestDocument
from shipline.manifests.patcher import ManifestPatcher
from shipline.manifests.publisher import ManifestPublisher
from shipline.pipeline.schema import PipelineDefinition
from shipline.runs.locks import LockWaitAborted, environment_lock
from shipline.runs.models import PipelineRun
from shipline.runs.retry import RetryPolicy, stage_policies
from shipline.runs.service import (
    claim_run,
    create_run,
    error_kind,
    get_run,
    is_cancel_requested,
    list_runs,
    record_attempt,
    request_cancel,
    unfinished_runs,
)
from shipline.scm.checkout import SourceCheckout
from shipline.types import (
    STAGE_ORDER,
    BuildArtifact,
    Fatal,
    ImageReference,
    Retryable,
    RunStatus,
    Stage,
    StageResult,
    Success,
    TriggerKind,
)
from shipline.workspace import RunWorkspace, run_workspace

logger = logging.getLogger(__name__)

# Retries of run number allocation when another process took the number
NUMBER_ALLOCATION_ATTEMPTS = 5

# Poll interval when waiting on a run executed by another process
WAIT_POLL_INTERVAL = 0.5


class UnknownEnvironmentError(Exception):
    """Raised when a trigger names an environment the pipeline lacks."""

    def __init__(self, environment: str, code: str = "unknown_environment") -> None:
        super().__init__(f"Unknown environment: {environment}")
        self.environment = environment
        self.code = code


class EngineClosedError(Exception):
    """Raised when triggering on an engine that was shut down."""

    def __init__(self, code: str = "engine_closed") -> None:
        super().__init__("Pipeline engine is shut down")
        self.code = code


class Checkout(Protocol):
    def checkout(self, dest: Path, revision: str | None = None) -> str: ...


@dataclass
class StageCollaborators:
    """External collaborator adapters used by the stages."""

    checkout: Checkout
    builder: ArtifactBuilder
    image_publisher: ImagePublisher
    patcher: ManifestPatcher
    manifest_publisher: ManifestPublisher

    @classmethod
    def from_definition(
        cls, definition: PipelineDefinition, settings: Settings
    ) -> StageCollaborators:
        """Wire the real collaborators from a definition and settings."""
        patcher = ManifestPatcher()
        return cls(
            checkout=SourceCheckout(
                definition.source,
                timeout=settings.git_timeout,
                username=settings.git_username,
                token=settings.git_token,
            ),
            builder=ArtifactBuilder(definition.build, timeout=settings.build_timeout),
            image_publisher=ImagePublisher(
                definition.image,
                engine_binary=settings.container_engine,
                build_timeout=settings.image_build_timeout,
                push_timeout=settings.push_timeout,
                username=settings.registry_username,
                password=settings.registry_password,
            ),
            patcher=patcher,
            manifest_publisher=ManifestPublisher(
                definition.manifest,
                patcher=patcher,
                timeout=settings.git_timeout,
                push_attempts=settings.manifest_push_attempts,
                username=settings.git_username,
                token=settings.git_token,
            ),
        )


@dataclass
class RunContext:
    """Data flowing forward through one run's stages."""

    run_id: int
    environment: str
    tag: str
    label: str
    revision: str
    workspace: RunWorkspace
    log_dir: Path
    cancel_event: threading.Event
    source_revision: str | None = None
    artifact: BuildArtifact | None = None
    image: ImageReference | None = None
    document: ManifestDocument | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PipelineEngine:
    """Drives runs through the stage sequence.

    Runs of the same environment are strictly serialized in trigger
    order; runs of different environments execute in parallel, each in
    its environment's worker thread.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        session_factory: sessionmaker[Session],
        settings: Settings | None = None,
        collaborators: StageCollaborators | None = None,
        policies: dict[Stage, RetryPolicy] | None = None,
    ) -> None:
        self.definition = definition
        self.settings = settings or get_settings()
        self.collaborators = collaborators or StageCollaborators.from_definition(
            definition, self.settings
        )
        self.policies = policies or stage_policies(self.settings)
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self._queues: dict[str, queue.Queue[int | None]] = {}
        self._workers: dict[str, threading.Thread] = {}
        self._cancel_events: dict[int, threading.Event] = {}
        self._done_events: dict[int, threading.Event] = {}
        self._closed = False
        self._handlers: dict[Stage, Callable[[RunContext], dict[str, Any]]] = {
            Stage.CHECKOUT: self._checkout,
            Stage.BUILDING: self._build,
            Stage.PUBLISHING_IMAGE: self._publish_image,
            Stage.PATCHING_MANIFEST: self._patch_manifest,
            Stage.PUBLISHING_MANIFEST: self._publish_manifest,
        }

    def __enter__(self) -> PipelineEngine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # Triggering

    def create(
        self,
        environment: str,
        revision: str | None = None,
        trigger: TriggerKind = TriggerKind.MANUAL,
    ) -> int:
        """Persist a pending run without queueing it.

        Returns:
            The new run's id.

        Raises:
            UnknownEnvironmentError: If the environment is not defined.
        """
        if environment not in self.definition.environments:
            raise UnknownEnvironmentError(environment)
        revision = revision or self.definition.source.default_revision

        with self._lock:
            for attempt in range(1, NUMBER_ALLOCATION_ATTEMPTS + 1):
                try:
                    with get_session(self._session_factory) as session:
                        run_id = create_run(session, environment, revision, trigger).id
                    break
                except IntegrityError:
                    if attempt == NUMBER_ALLOCATION_ATTEMPTS:
                        raise
                    logger.warning(
                        "Run number for %s taken concurrently, retrying", environment
                    )
            self._cancel_events[run_id] = threading.Event()
            self._done_events[run_id] = threading.Event()
        return run_id

    def trigger(
        self,
        environment: str,
        revision: str | None = None,
        trigger: TriggerKind = TriggerKind.MANUAL,
    ) -> int:
        """Create a run and queue it behind its environment's earlier runs.

        Args:
            environment: Target environment.
            revision: Source revision; the pipeline default if None.
            trigger: What caused the run.

        Returns:
            The new run's id.

        Raises:
            UnknownEnvironmentError: If the environment is not defined.
            EngineClosedError: If the engine was shut down.
        """
        if self._closed:
            raise EngineClosedError()
        run_id = self.create(environment, revision, trigger)
        self._enqueue(environment, run_id)
        return run_id

    def _enqueue(self, environment: str, run_id: int) -> None:
        with self._lock:
            if self._closed:
                raise EngineClosedError()
            run_queue = self._queues.get(environment)
            if run_queue is None:
                run_queue = queue.Queue()
                worker = threading.Thread(
                    target=self._worker,
                    args=(environment, run_queue),
                    name=f"shipline-{environment}",
                    daemon=True,
                )
                self._queues[environment] = run_queue
                self._workers[environment] = worker
                worker.start()
            run_queue.put(run_id)
        logger.info("Queued run %d for %s", run_id, environment)

    def _worker(self, environment: str, run_queue: queue.Queue[int | None]) -> None:
        logger.debug("Worker for %s started", environment)
        while True:
            run_id = run_queue.get()
            try:
                if run_id is None:
                    logger.debug("Worker for %s stopping", environment)
                    return
                self.execute(run_id)
            except Exception:
                logger.exception("Run %s crashed", run_id)
            finally:
                run_queue.task_done()

    def recover_interrupted(self) -> list[int]:
        """Fail the runs a previous process left pending or running.

        An environment is only recovered when its lock is free. A held lock
        means another process is executing that environment's runs.

        Returns:
            IDs of the runs marked failed.
        """
        recovered: list[int] = []
        for environment in sorted(self.definition.environments):
            try:
                with environment_lock(self.settings.lock_dir, environment, timeout=0):
                    with get_session(self._session_factory) as session:
                        for run in unfinished_runs(session, environment):
                            run.mark_failed(
                                Stage(run.stage),
                                "InternalError",
                                "Run interrupted before it finished",
                                response="interrupted",
                            )
                            recovered.append(run.id)
                            logger.warning("Run %s was interrupted", run.label)
            except TimeoutError:
                logger.info(
                    "Environment %s is busy in another process, not recovering",
                    environment,
                )
        return recovered

    # Control and queries

    def cancel(self, run_id: int) -> RunStatus:
        """Request cancellation of a run.

        Pending runs are cancelled at once. Running runs stop at the next
        stage boundary or retry wait; a collaborator call in flight is
        never interrupted.

        Returns:
            The run's status right after the request.

        Raises:
            RunNotFoundError: If run not found.
        """
        with get_session(self._session_factory) as session:
            status = RunStatus(request_cancel(session, run_id).status)
        with self._lock:
            cancel_event = self._cancel_events.get(run_id)
            done_event = self._done_events.get(run_id)
        if cancel_event is not None:
            cancel_event.set()
        if status.is_terminal and done_event is not None:
            done_event.set()
        return status

    def status(self, run_id: int) -> dict[str, Any]:
        """Return a run's state and stage history.

        Raises:
            RunNotFoundError: If run not found.
        """
        with get_session(self._session_factory) as session:
            return get_run(session, run_id).to_dict()

    def list_runs(
        self,
        environment: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """List runs, newest first."""
        with get_session(self._session_factory) as session:
            runs = list_runs(
                session, environment=environment, status=status, limit=limit
            )
            return [r.to_dict(include_attempts=False) for r in runs]

    def wait(self, run_id: int, timeout: float | None = None) -> RunStatus:
        """Block until a run is terminal or ``timeout`` expires.

        Returns:
            The run's status when the wait ended.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            done_event = self._done_events.get(run_id)
        while True:
            with get_session(self._session_factory) as session:
                status = RunStatus(get_run(session, run_id).status)
            if status.is_terminal:
                return status
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return status
            slice_s = WAIT_POLL_INTERVAL if remaining is None else min(
                WAIT_POLL_INTERVAL, remaining
            )
            if done_event is not None:
                done_event.wait(slice_s)
            else:
                time.sleep(slice_s)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the workers after their queued runs finish."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            workers = list(self._workers.values())
            for run_queue in self._queues.values():
                run_queue.put(None)
        if wait:
            for worker in workers:
                worker.join()

    # Execution

    def execute(self, run_id: int) -> RunStatus:
        """Execute a run in the calling thread.

        Holds the environment's inter-process lock for the whole run.

        Returns:
            The run's final status.
        """
        try:
            with get_session(self._session_factory) as session:
                run = get_run(session, run_id)
                environment = run.environment
                if run.is_terminal:
                    logger.info("Run %s is %s, skipping", run.label, run.status)
                    return RunStatus(run.status)

            try:
                with environment_lock(
                    self.settings.lock_dir,
                    environment,
                    should_abort=lambda: self._run_finished(run_id),
                ):
                    return self._execute_locked(run_id)
            except LockWaitAborted:
                logger.info("Run %s cancelled while waiting for its lock", run_id)
                return RunStatus.CANCELLED
        finally:
            with self._lock:
                done_event = self._done_events.get(run_id)
            if done_event is not None:
                done_event.set()

    def _execute_locked(self, run_id: int) -> RunStatus:
        with get_session(self._session_factory) as session:
            claimed = claim_run(session, run_id)
            run = get_run(session, run_id)
            if not claimed:
                if not run.is_terminal:
                    run.mark_cancelled()
                logger.info("Run %s not started: %s", run.label, run.status)
                return RunStatus(run.status)
            log_dir = self.settings.logs_dir / run.environment / str(run.number)
            run.log_dir = str(log_dir)
            environment = run.environment
            tag = run.tag
            label = run.label
            revision = run.requested_revision

        log_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            cancel_event = self._cancel_events.setdefault(run_id, threading.Event())
        logger.info("Run %s started for revision %s", label, revision)

        try:
            with run_workspace(self.settings.workspace_dir, tag) as workspace:
                ctx = RunContext(
                    run_id=run_id,
                    environment=environment,
                    tag=tag,
                    label=label,
                    revision=revision,
                    workspace=workspace,
                    log_dir=log_dir,
                    cancel_event=cancel_event,
                )
                return self._run_stages(ctx)
        except Exception as e:
            logger.exception("Run %s aborted", label)
            self._abort(run_id, e)
            raise

    def _run_stages(self, ctx: RunContext) -> RunStatus:
        for stage in STAGE_ORDER:
            if self._cancel_requested(ctx):
                return self._finish_cancelled(ctx)

            self._update(ctx.run_id, lambda run, s=stage: run.enter_stage(s))
            logger.info("Run %s entering %s", ctx.label, stage.value)

            result = self._run_stage(ctx, stage)
            if result is None:
                return self._finish_cancelled(ctx)
            if isinstance(result, Fatal):
                return self._finish_failed(ctx, stage, result.error)

        if self._cancel_requested(ctx):
            logger.info(
                "Run %s published its manifest before the cancel request, "
                "finishing as succeeded",
                ctx.label,
            )
        self._update(ctx.run_id, lambda run: run.mark_succeeded())
        logger.info("Run %s succeeded", ctx.label)
        return RunStatus.SUCCEEDED

    def _run_stage(self, ctx: RunContext, stage: Stage) -> StageResult | None:
        """Run one stage with retries.

        Returns:
            Success, Fatal, or None if the run was cancelled while waiting
            to retry.
        """
        policy = self.policies[stage]
        attempt = 0
        while True:
            attempt += 1
            started_at = _now()
            result = self._attempt(ctx, stage)
            finished_at = _now()

            with get_session(self._session_factory) as session:
                run = get_run(session, ctx.run_id)
                record_attempt(
                    session, run, stage, attempt, result, started_at, finished_at
                )
                if isinstance(result, Success):
                    _store_outputs(run, stage, result.output)

            if isinstance(result, (Success, Fatal)):
                return result

            if policy.exhausted(attempt):
                logger.error(
                    "Stage %s of run %s out of retries after %d attempt(s)",
                    stage.value,
                    ctx.label,
                    attempt,
                )
                return Fatal(result.error)

            delay = policy.delay(attempt)
            logger.warning(
                "Stage %s of run %s failed (%s), retry %d/%d in %.1fs",
                stage.value,
                ctx.label,
                result.error,
                attempt + 1,
                policy.max_attempts,
                delay,
            )
            if ctx.cancel_event.wait(delay) or self._cancel_requested(ctx):
                return None

    def _attempt(self, ctx: RunContext, stage: Stage) -> StageResult:
        handler = self._handlers[stage]
        try:
            output = handler(ctx)
        except PipelineError as e:
            logger.warning(
                "Stage %s of run %s: %s (%s)", stage.value, ctx.label, e, e.kind
            )
            return Retryable(e) if e.retryable else Fatal(e)
        except Exception as e:
            logger.exception(
                "Unexpected error in stage %s of run %s", stage.value, ctx.label
            )
            return Fatal(e)
        return Success(output)

    def _run_finished(self, run_id: int) -> bool:
        with get_session(self._session_factory) as session:
            return get_run(session, run_id).is_terminal

    def _cancel_requested(self, ctx: RunContext) -> bool:
        if ctx.cancel_event.is_set():
            return True
        with get_session(self._session_factory) as session:
            return is_cancel_requested(session, ctx.run_id)

    def _update(self, run_id: int, change: Callable[[PipelineRun], None]) -> None:
        with get_session(self._session_factory) as session:
            change(get_run(session, run_id))

    def _finish_cancelled(self, ctx: RunContext) -> RunStatus:
        self._update(ctx.run_id, lambda run: run.mark_cancelled())
        logger.info("Run %s cancelled", ctx.label)
        return RunStatus.CANCELLED

    def _finish_failed(
        self, ctx: RunContext, stage: Stage, error: Exception
    ) -> RunStatus:
        kind = error_kind(error)
        response = error.response if isinstance(error, PipelineError) else None
        self._update(
            ctx.run_id,
            lambda run: run.mark_failed(stage, kind, str(error), response),
        )
        logger.error("Run %s failed at %s: %s: %s", ctx.label, stage.value, kind, error)
        return RunStatus.FAILED

    def _abort(self, run_id: int, error: Exception) -> None:
        with get_session(self._session_factory) as session:
            run = get_run(session, run_id)
            if run.is_terminal:
                return
            run.mark_failed(Stage(run.stage), error_kind(error), str(error))

    # Stage handlers

    def _checkout(self, ctx: RunContext) -> dict[str, Any]:
        dest = ctx.workspace.source_dir
        shutil.rmtree(dest, ignore_errors=True)
        ctx.source_revision = self.collaborators.checkout.checkout(dest, ctx.revision)
        return {"source_revision": ctx.source_revision}

    def _build(self, ctx: RunContext) -> dict[str, Any]:
        if ctx.source_revision is None:
            raise RuntimeError("build stage needs a checkout")
        ctx.artifact = self.collaborators.builder.build(
            ctx.workspace.source_dir,
            ctx.source_revision,
            ctx.log_dir,
            env=ctx.workspace.command_env(),
        )
        return ctx.artifact.to_dict()

    def _publish_image(self, ctx: RunContext) -> dict[str, Any]:
        if ctx.artifact is None:
            raise RuntimeError("image stage needs a build artifact")
        ctx.image = self.collaborators.image_publisher.publish(
            ctx.artifact,
            ctx.tag,
            ctx.workspace.source_dir,
            env=ctx.workspace.command_env(),
        )
        return {"image": str(ctx.image)}

    def _patch_manifest(self, ctx: RunContext) -> dict[str, Any]:
        if ctx.image is None:
            raise RuntimeError("patch stage needs a published image")
        dest = ctx.workspace.manifests_dir
        shutil.rmtree(dest, ignore_errors=True)
        manifest_path = self.definition.environments[ctx.environment].manifest_path
        document = self.collaborators.manifest_publisher.prepare(
            dest,
            self.definition.manifest_branch(ctx.environment),
            manifest_path,
        )
        ctx.document = self.collaborators.patcher.patch(document, ctx.image)
        return {"manifest_path": manifest_path, "images": ctx.document.images}

    def _publish_manifest(self, ctx: RunContext) -> dict[str, Any]:
        if ctx.document is None:
            raise RuntimeError("publish stage needs a patched manifest")
        result = self.collaborators.manifest_publisher.publish(ctx.document, ctx.label)
        return {
            "commit": result.commit,
            "changed": result.changed,
            "rounds": result.attempts,
        }


def _store_outputs(run: PipelineRun, stage: Stage, output: dict[str, Any]) -> None:
    if stage is Stage.CHECKOUT:
        run.source_revision = output.get("source_revision")
    elif stage is Stage.PUBLISHING_IMAGE:
        run.image = output.get("image")
    elif stage is Stage.PUBLISHING_MANIFEST:
        run.manifest_commit = output.get("commit")


__all__ = [
    "EngineClosedError",
    "PipelineEngine",
    "RunContext",
    "StageCollaborators",
    "UnknownEnvironmentError",
]
