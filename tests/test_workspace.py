"""Tests for workspace.py module."""

import os
import stat

import pytest

from shipline.workspace import run_workspace


class TestRunWorkspace:
    """Tests for run_workspace."""

    def test_layout(self, tmp_path):
        with run_workspace(tmp_path, "staging-1") as workspace:
            assert workspace.root.parent == tmp_path
            assert workspace.root.name.startswith("staging-1_")
            assert workspace.engine_config_dir.is_dir()
            mode = stat.S_IMODE(workspace.engine_config_dir.stat().st_mode)
            assert mode == 0o700
            assert workspace.source_dir == workspace.root / "source"
            assert workspace.manifests_dir == workspace.root / "manifests"

    def test_removed_after_success(self, tmp_path):
        with run_workspace(tmp_path, "staging-1") as workspace:
            (workspace.root / "source").mkdir()
            (workspace.root / "source" / "app.jar").write_bytes(b"jar")

        assert not workspace.root.exists()

    def test_removed_after_failure(self, tmp_path):
        with pytest.raises(RuntimeError):
            with run_workspace(tmp_path, "staging-1") as workspace:
                raise RuntimeError("stage crashed")

        assert not workspace.root.exists()

    def test_command_env(self, tmp_path):
        with run_workspace(tmp_path, "staging-1") as workspace:
            env = workspace.command_env({"EXTRA": "1"})

            assert env["DOCKER_CONFIG"] == str(workspace.engine_config_dir)
            assert env["GIT_TERMINAL_PROMPT"] == "0"
            assert env["EXTRA"] == "1"
            assert env["PATH"] == os.environ["PATH"]

    def test_separate_runs_do_not_share(self, tmp_path):
        with run_workspace(tmp_path, "staging-1") as first:
            with run_workspace(tmp_path, "staging-1") as second:
                assert first.root != second.root
