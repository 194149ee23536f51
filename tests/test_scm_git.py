"""Tests for scm/git.py and scm/checkout.py modules.

Checkout tests use local repositories in tmp_path and need a git binary.
"""

import base64
import shutil

import pytest
from git import Actor, GitCommandError, Repo
from pydantic import SecretStr

from shipline.errors import AuthError, BuildError, ConflictError, NetworkError
from shipline.pipeline.schema import SourceConfig
from shipline.scm.checkout import SourceCheckout
from shipline.scm.git import classify_git_error, credential_env

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not found")

AUTHOR = Actor("Test", "test@example.com")


def git_error(stderr: str, command: str = "push") -> GitCommandError:
    return GitCommandError(["git", command], 128, stderr=stderr)


class TestClassifyGitError:
    """Tests for classify_git_error function."""

    @pytest.mark.parametrize(
        "stderr",
        [
            "fatal: Authentication failed for 'https://git.example.com/app.git/'",
            "fatal: could not read Username for 'https://git.example.com': "
            "terminal prompts disabled",
            "remote: Repository not found.",
            "git@git.example.com: Permission denied (publickey).",
        ],
    )
    def test_auth_failures(self, stderr):
        error = classify_git_error(git_error(stderr, "clone"), "clone")
        assert isinstance(error, AuthError)
        assert not error.retryable

    def test_push_rejected_is_conflict(self):
        stderr = (
            " ! [rejected]        HEAD -> main (fetch first)\n"
            "error: failed to push some refs to 'origin'"
        )
        error = classify_git_error(git_error(stderr), "push")
        assert isinstance(error, ConflictError)
        assert error.retryable
        assert "fetch first" in error.response

    def test_rejected_outside_push_is_not_conflict(self):
        error = classify_git_error(git_error("non-fast-forward", "fetch"), "fetch")
        assert not isinstance(error, ConflictError)

    @pytest.mark.parametrize(
        "stderr",
        [
            " ! [remote rejected] main -> main (protected branch hook declined)",
            " ! [remote rejected] main -> main (pre-receive hook declined)",
        ],
    )
    def test_remote_rejection_is_not_conflict(self, stderr):
        """Server-side refusals are fatal, not retried as conflicts."""
        error = classify_git_error(git_error(stderr), "push")
        assert isinstance(error, AuthError)
        assert not error.retryable

    def test_timeout(self):
        stderr = 'Timeout: the command "git clone" did not complete in 30 secs.'
        error = classify_git_error(git_error(stderr, "clone"), "clone")
        assert isinstance(error, NetworkError)
        assert error.code == "timeout"

    def test_unknown_revision(self):
        error = classify_git_error(
            git_error("fatal: Needed a single revision", "rev-parse"), "rev-parse"
        )
        assert isinstance(error, BuildError)
        assert error.code == "unknown_revision"

    def test_anything_else_is_transient(self):
        error = classify_git_error(
            git_error("fatal: unable to access: Could not resolve host"), "push"
        )
        assert isinstance(error, NetworkError)
        assert error.retryable


class TestCredentialEnv:
    """Tests for credential_env function."""

    def test_no_token(self):
        assert credential_env("x-access-token", None) == {}

    def test_token_header(self):
        env = credential_env("bot", SecretStr("s3cret"))

        assert env["GIT_CONFIG_COUNT"] == "1"
        assert env["GIT_CONFIG_KEY_0"] == "http.extraHeader"
        encoded = env["GIT_CONFIG_VALUE_0"].removeprefix("Authorization: Basic ")
        assert base64.b64decode(encoded) == b"bot:s3cret"


@pytest.fixture
def source_repo(tmp_path):
    """Create a source repository with main, a tag and a feature branch."""
    path = tmp_path / "source"
    repo = Repo.init(path)
    repo.git.symbolic_ref("HEAD", "refs/heads/main")

    (path / "README.md").write_text("v1\n")
    repo.index.add(["README.md"])
    v1 = repo.index.commit("v1", author=AUTHOR, committer=AUTHOR)
    repo.create_tag("v1.0")

    (path / "README.md").write_text("v2\n")
    repo.index.add(["README.md"])
    v2 = repo.index.commit("v2", author=AUTHOR, committer=AUTHOR)

    repo.git.checkout("-b", "feature", v1.hexsha)
    (path / "feature.txt").write_text("wip\n")
    repo.index.add(["feature.txt"])
    feature = repo.index.commit("feature", author=AUTHOR, committer=AUTHOR)
    repo.git.checkout("main")
    repo.close()

    return {
        "url": str(path),
        "v1": v1.hexsha,
        "v2": v2.hexsha,
        "feature": feature.hexsha,
    }


@requires_git
class TestSourceCheckout:
    """Tests for SourceCheckout against a local repository."""

    def test_default_revision(self, tmp_path, source_repo):
        checkout = SourceCheckout(SourceConfig(url=source_repo["url"]))
        sha = checkout.checkout(tmp_path / "work")

        assert sha == source_repo["v2"]
        assert (tmp_path / "work" / "README.md").read_text() == "v2\n"

    def test_branch(self, tmp_path, source_repo):
        checkout = SourceCheckout(SourceConfig(url=source_repo["url"]))
        sha = checkout.checkout(tmp_path / "work", "feature")

        assert sha == source_repo["feature"]
        assert (tmp_path / "work" / "feature.txt").exists()

    def test_tag(self, tmp_path, source_repo):
        checkout = SourceCheckout(SourceConfig(url=source_repo["url"]))
        assert checkout.checkout(tmp_path / "work", "v1.0") == source_repo["v1"]

    def test_sha(self, tmp_path, source_repo):
        checkout = SourceCheckout(SourceConfig(url=source_repo["url"]))
        sha = checkout.checkout(tmp_path / "work", source_repo["v1"][:12])

        assert sha == source_repo["v1"]
        assert (tmp_path / "work" / "README.md").read_text() == "v1\n"

    def test_unknown_revision(self, tmp_path, source_repo):
        checkout = SourceCheckout(SourceConfig(url=source_repo["url"]))
        with pytest.raises(BuildError) as exc_info:
            checkout.checkout(tmp_path / "work", "does-not-exist")

        assert exc_info.value.code == "unknown_revision"
