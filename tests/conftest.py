"""Shared fixtures: settings in tmp_path, a pipeline definition and fake
stage collaborators that record how they were called."""

import threading
import time
from pathlib import Path

import pytest

from shipline.builds.artifacts import describe_artifact, verify_artifact
from shipline.config import Settings
from shipline.db import create_all_tables, get_engine, get_session_factory
from shipline.manifests.document import ManifestDocument
from shipline.manifests.patcher import ManifestPatcher
from shipline.manifests.publisher import PublishResult
from shipline.pipeline.io import parse_pipeline_data
from shipline.runs.engine import StageCollaborators
from shipline.types import ImageReference

REPOSITORY = "registry.example.com/team/app"

DEPLOYMENT = """\
# Deployment managed by shipline
apiVersion: apps/v1
kind: Deployment
metadata:
  name: app
spec:
  replicas: 2
  template:
    spec:
      containers:
        - name: app
          image: registry.example.com/team/app:replaceImageTag   # placeholder
          ports:
            - containerPort: 8080
        - name: sidecar
          image: "docker.io/library/nginx:1.25"
"""

PIPELINE_DATA = {
    "name": "app",
    "source": {"url": "https://git.example.com/team/app.git"},
    "build": {"command": "make package", "artifact": "dist/*.jar"},
    "image": {"repository": REPOSITORY},
    "manifest": {"url": "https://git.example.com/team/deploy.git"},
    "environments": {
        "staging": {"manifest_path": "staging/deployment.yaml"},
        "production": {"manifest_path": "production/deployment.yaml"},
    },
}


@pytest.fixture
def pipeline_data() -> dict:
    """Return raw pipeline definition data."""
    return {
        key: dict(value) if isinstance(value, dict) else value
        for key, value in PIPELINE_DATA.items()
    }


@pytest.fixture
def definition(pipeline_data):
    """Return a validated two-environment pipeline definition."""
    return parse_pipeline_data(pipeline_data)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every path in tmp_path and instant retries."""
    return Settings(
        pipeline_file=tmp_path / "shipline.yaml",
        workspace_dir=tmp_path / "workspaces",
        logs_dir=tmp_path / "logs",
        lock_dir=tmp_path / "locks",
        db_url=f"sqlite:///{tmp_path / 'db.sqlite'}",
        retry_base_delay=0,
        registry_password=None,
        git_token=None,
    )


@pytest.fixture
def session_factory(settings: Settings):
    """Session factory bound to a fresh SQLite file."""
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    yield get_session_factory(engine)
    engine.dispose()


class Recorder:
    """Base for fakes: scripted failures and a call log."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.failures: list[Exception] = []
        self.before_call = None
        self._lock = threading.Lock()

    def _enter(self, **call) -> None:
        call["started"] = time.monotonic()
        with self._lock:
            self.calls.append(call)
        if self.before_call is not None:
            self.before_call(call)
        with self._lock:
            failure = self.failures.pop(0) if self.failures else None
        if failure is not None:
            raise failure


class FakeCheckout(Recorder):
    def checkout(self, dest: Path, revision: str | None = None) -> str:
        self._enter(dest=dest, revision=revision)
        dest.mkdir(parents=True)
        (dest / "Dockerfile").write_text("FROM scratch\n")
        return "a" * 40


class FakeBuilder(Recorder):
    def build(self, source_dir, source_revision, log_dir, env=None):
        self._enter(source_dir=source_dir, source_revision=source_revision)
        dist = source_dir / "dist"
        dist.mkdir(exist_ok=True)
        path = dist / "app.jar"
        path.write_bytes(b"jar:" + source_revision.encode())
        return describe_artifact(path, source_revision)


class FakeImagePublisher(Recorder):
    def __init__(self) -> None:
        super().__init__()
        self.pushed: list[str] = []

    def publish(self, artifact, tag, source_dir, env=None):
        self._enter(tag=tag, artifact=artifact)
        verify_artifact(artifact)
        image = ImageReference(repository=REPOSITORY, tag=tag)
        with self._lock:
            self.pushed.append(str(image))
        return image


class FakeManifestPublisher(Recorder):
    """Keeps one remote manifest text per manifest path."""

    def __init__(self) -> None:
        super().__init__()
        self.remote: dict[str, str] = {}
        self.commits = 0
        self.finished: list[tuple[str, float]] = []

    def prepare(self, clone_dir: Path, branch: str, manifest_path: str):
        path = clone_dir / manifest_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.remote.get(manifest_path, DEPLOYMENT))
        return ManifestDocument.load(path)

    def publish(self, document: ManifestDocument, run_label: str) -> PublishResult:
        self._enter(run_label=run_label, image=str(document.applied_image))
        rel = document.source_path.relative_to(document.source_path.parents[1])
        with self._lock:
            self.remote[rel.as_posix()] = document.serialize()
            self.commits += 1
            commit = f"{self.commits:040x}"
            self.finished.append((run_label, time.monotonic()))
        return PublishResult(commit=commit, changed=True, attempts=1)


@pytest.fixture
def fakes():
    """Fake collaborators around the real manifest patcher."""
    return StageCollaborators(
        checkout=FakeCheckout(),
        builder=FakeBuilder(),
        image_publisher=FakeImagePublisher(),
        patcher=ManifestPatcher(),
        manifest_publisher=FakeManifestPublisher(),
    )
