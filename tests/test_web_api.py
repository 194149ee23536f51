"""Tests for FastAPI web API.

Uses TestClient to test all endpoints. The app lifespan creates a fresh
SQLite database in tmp_path and an engine wired to the fake collaborators.
"""

import threading

import pytest
from fastapi.testclient import TestClient
from pydantic import SecretStr

from shipline import __version__
from shipline.types import RunStatus
from web.app import create_app

WAIT = 10


@pytest.fixture
def client(settings, definition, fakes):
    """Create a test client around an app using the fake collaborators."""
    settings.git_token = SecretStr("ghp_supersecret")
    app = create_app(settings=settings, definition=definition, collaborators=fakes)
    with TestClient(app) as test_client:
        yield test_client


def finish(client: TestClient, run_id: int) -> RunStatus:
    return client.app.state.pipeline_engine.wait(run_id, timeout=WAIT)


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health(self, client):
        """Health reports the database and the configured environments."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "version": __version__,
            "database": "ok",
            "pipeline": "app",
            "environments": ["production", "staging"],
        }

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["name"] == "Shipline API"


class TestConfigEndpoint:
    """Tests for config endpoint."""

    def test_get_config(self, client, settings):
        response = client.get("/config")
        assert response.status_code == 200
        data = response.json()
        assert data["db_url"] == settings.db_url
        assert data["publish_image_attempts"] == 3

    def test_secrets_masked(self, client):
        """Secret values never leave the process."""
        response = client.get("/config")
        assert "ghp_supersecret" not in response.text
        assert response.json()["git_token"] == "**********"

    def test_pipeline_definition(self, client):
        response = client.get("/config/pipeline")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "app"
        assert data["image"]["repository"] == "registry.example.com/team/app"
        assert data["environments"]["staging"] == {
            "manifest_path": "staging/deployment.yaml",
            "branch": "main",
        }


class TestTriggerEndpoint:
    """Tests for POST /runs."""

    def test_trigger_run(self, client):
        """Should accept the run and execute it in the background."""
        response = client.post(
            "/runs", json={"environment": "staging", "revision": "v2.0.0"}
        )
        assert response.status_code == 202
        data = response.json()
        assert data["environment"] == "staging"
        assert data["number"] == 1
        assert data["tag"] == "staging-1"
        assert data["requested_revision"] == "v2.0.0"

        assert finish(client, data["id"]) == RunStatus.SUCCEEDED

    def test_default_revision_and_trigger(self, client):
        response = client.post("/runs", json={"environment": "production"})
        assert response.status_code == 202
        data = response.json()
        assert data["requested_revision"] == "main"
        assert data["trigger"] == "manual"
        finish(client, data["id"])

    def test_trigger_kind(self, client):
        response = client.post(
            "/runs", json={"environment": "staging", "trigger": "push"}
        )
        assert response.status_code == 202
        assert response.json()["trigger"] == "push"
        finish(client, response.json()["id"])

    def test_unknown_environment(self, client, fakes):
        response = client.post("/runs", json={"environment": "qa"})
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "unknown_environment"
        assert fakes.checkout.calls == []

    def test_invalid_trigger_kind(self, client):
        response = client.post(
            "/runs", json={"environment": "staging", "trigger": "telepathy"}
        )
        assert response.status_code == 422

    def test_missing_environment(self, client):
        response = client.post("/runs", json={})
        assert response.status_code == 422


class TestRunQueries:
    """Tests for GET /runs and GET /runs/{id}."""

    @pytest.fixture
    def run_ids(self, client) -> list[int]:
        """Three finished runs: staging-1, production-1, staging-2."""
        ids = []
        for environment in ("staging", "production", "staging"):
            run_id = client.post("/runs", json={"environment": environment}).json()[
                "id"
            ]
            finish(client, run_id)
            ids.append(run_id)
        return ids

    def test_list_runs_empty(self, client):
        response = client.get("/runs")
        assert response.status_code == 200
        assert response.json() == []

    def test_list_runs_newest_first(self, client, run_ids):
        response = client.get("/runs")
        assert response.status_code == 200
        assert [r["tag"] for r in response.json()] == [
            "staging-2",
            "production-1",
            "staging-1",
        ]

    def test_list_runs_filters(self, client, run_ids):
        response = client.get(
            "/runs", params={"environment": "staging", "status": "succeeded"}
        )
        assert [r["tag"] for r in response.json()] == ["staging-2", "staging-1"]

        response = client.get("/runs", params={"status": "failed"})
        assert response.json() == []

        response = client.get("/runs", params={"limit": 1})
        assert len(response.json()) == 1

    def test_list_runs_invalid_status(self, client):
        response = client.get("/runs", params={"status": "exploded"})
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_status"

    def test_get_run(self, client, run_ids):
        response = client.get(f"/runs/{run_ids[0]}")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "succeeded"
        assert data["image"] == "registry.example.com/team/app:staging-1"
        assert [a["stage"] for a in data["attempts"]] == [
            "checkout",
            "building",
            "publishing_image",
            "patching_manifest",
            "publishing_manifest",
        ]

    def test_get_run_not_found(self, client):
        response = client.get("/runs/999")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "run_not_found"

    def test_failed_run_details(self, client, fakes):
        """A failed run reports the failing stage and error kind."""
        from shipline.errors import BuildError

        fakes.builder.failures = [BuildError("tests failed", response="1 failed")]
        run_id = client.post("/runs", json={"environment": "staging"}).json()["id"]
        assert finish(client, run_id) == RunStatus.FAILED

        data = client.get(f"/runs/{run_id}").json()
        assert data["failed_stage"] == "building"
        assert data["error_kind"] == "BuildError"
        assert data["last_response"] == "1 failed"
        assert data["image"] is None


class TestCancelEndpoint:
    """Tests for POST /runs/{id}/cancel."""

    def test_cancel_running_run(self, client, fakes):
        """A running run stops at the next stage boundary."""
        started = threading.Event()
        release = threading.Event()

        def block(call):
            started.set()
            release.wait(WAIT)

        fakes.checkout.before_call = block
        run_id = client.post("/runs", json={"environment": "staging"}).json()["id"]
        assert started.wait(WAIT)

        response = client.post(f"/runs/{run_id}/cancel")
        assert response.status_code == 200
        assert response.json()["cancel_requested"] is True
        assert response.json()["status"] == "running"

        release.set()
        assert finish(client, run_id) == RunStatus.CANCELLED
        assert fakes.builder.calls == []

    def test_cancel_finished_run(self, client):
        run_id = client.post("/runs", json={"environment": "staging"}).json()["id"]
        finish(client, run_id)

        response = client.post(f"/runs/{run_id}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "succeeded"

    def test_cancel_not_found(self, client):
        response = client.post("/runs/999/cancel")
        assert response.status_code == 404


class TestStartup:
    """Tests for work done when the app starts."""

    def test_unfinished_runs_failed_at_startup(
        self, settings, definition, fakes, session_factory
    ):
        """A run left pending by a previous process does not stay pending."""
        from shipline.db import get_session
        from shipline.runs.service import create_run

        with get_session(session_factory) as session:
            run_id = create_run(session, "staging", "main").id

        app = create_app(settings=settings, definition=definition, collaborators=fakes)
        with TestClient(app) as test_client:
            data = test_client.get(f"/runs/{run_id}").json()

        assert data["status"] == "failed"
        assert data["error_kind"] == "InternalError"
        assert fakes.checkout.calls == []
