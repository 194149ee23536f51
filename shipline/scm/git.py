"""Shared git plumbing.

This module handles:
- Running remote git commands through GitPython with a timeout
- Passing an HTTPS token to a single git call without touching config
- Classifying git failures into the stage error taxonomy
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any

from git import Git, GitCommandError, Repo
from pydantic import SecretStr

from shipline.errors import (
    AuthError,
    BuildError,
    ConflictError,
    NetworkError,
    PipelineError,
)

logger = logging.getLogger(__name__)

AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "permission denied",
    "invalid username or password",
    "access denied",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
    "repository not found",
    "does not appear to be a git repository",
    "protected branch",
    "hook declined",
)

CONFLICT_MARKERS = (
    "non-fast-forward",
    "fetch first",
    "stale info",
)

UNKNOWN_REVISION_MARKERS = (
    "unknown revision",
    "did not match any",
    "needed a single revision",
    "not a valid object name",
    "remote branch",
)


def credential_env(username: str, token: SecretStr | None) -> dict[str, str]:
    """Environment that authenticates HTTPS git calls with a token.

    The header is handed to git through ``GIT_CONFIG_*`` variables, so it
    is never written to the clone's ``.git/config``.
    """
    if token is None:
        return {}
    raw = f"{username}:{token.get_secret_value()}".encode()
    basic = base64.b64encode(raw).decode("ascii")
    return {
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": "http.extraHeader",
        "GIT_CONFIG_VALUE_0": f"Authorization: Basic {basic}",
    }


def classify_git_error(error: GitCommandError, action: str) -> PipelineError:
    """Map a failed git command onto the error taxonomy."""
    stderr = str(error.stderr or "")
    lowered = stderr.lower()
    if "did not complete in" in lowered or "timed out" in lowered:
        return NetworkError(f"git {action} timed out", response=stderr, code="timeout")
    if any(marker in lowered for marker in AUTH_FAILURE_MARKERS):
        return AuthError(f"git {action} was not authorized", response=stderr)
    if action == "push" and any(marker in lowered for marker in CONFLICT_MARKERS):
        return ConflictError("Remote moved since checkout", response=stderr)
    if any(marker in lowered for marker in UNKNOWN_REVISION_MARKERS):
        return BuildError(
            f"git {action} failed: unknown revision",
            response=stderr,
            code="unknown_revision",
        )
    return NetworkError(f"git {action} failed", response=stderr)


def clone(
    url: str,
    dest: Path,
    branch: str | None = None,
    env: dict[str, str] | None = None,
    timeout: int | None = None,
) -> Repo:
    """Clone a repository.

    Raises:
        PipelineError: Classified clone failure.
    """
    args: list[Any] = []
    if branch:
        args.extend(["--branch", branch, "--single-branch"])
    args.extend(["--", url, str(dest)])
    logger.info("Cloning %s into %s", url, dest)
    try:
        Git(str(dest.parent)).clone(*args, env=env, kill_after_timeout=timeout)
    except GitCommandError as e:
        raise classify_git_error(e, "clone") from e
    return Repo(dest)


def fetch(
    repo: Repo,
    branch: str,
    env: dict[str, str] | None = None,
    timeout: int | None = None,
) -> None:
    """Fetch one branch from origin, updating ``origin/<branch>``.

    Raises:
        PipelineError: Classified fetch failure.
    """
    refspec = f"+refs/heads/{branch}:refs/remotes/origin/{branch}"
    try:
        repo.git.fetch("origin", refspec, env=env, kill_after_timeout=timeout)
    except GitCommandError as e:
        raise classify_git_error(e, "fetch") from e


def push(
    repo: Repo,
    branch: str,
    env: dict[str, str] | None = None,
    timeout: int | None = None,
) -> None:
    """Push HEAD to ``branch`` on origin. Never forces.

    Raises:
        ConflictError: The remote branch moved.
        PipelineError: Any other classified failure.
    """
    try:
        repo.git.push(
            "origin",
            f"HEAD:refs/heads/{branch}",
            env=env,
            kill_after_timeout=timeout,
        )
    except GitCommandError as e:
        raise classify_git_error(e, "push") from e


__all__ = [
    "AUTH_FAILURE_MARKERS",
    "CONFLICT_MARKERS",
    "classify_git_error",
    "clone",
    "credential_env",
    "fetch",
    "push",
]
