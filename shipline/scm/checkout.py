"""Application source checkout."""

from __future__ import annotations

import logging
from pathlib import Path

from git import GitCommandError
from pydantic import SecretStr

from shipline.errors import BuildError
from shipline.pipeline.schema import SourceConfig
from shipline.scm.git import classify_git_error, clone, credential_env

logger = logging.getLogger(__name__)


class SourceCheckout:
    """Clones the source repository and pins it to one revision."""

    def __init__(
        self,
        config: SourceConfig,
        timeout: int | None = None,
        username: str = "x-access-token",
        token: SecretStr | None = None,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self.username = username
        self.token = token

    def checkout(self, dest: Path, revision: str | None = None) -> str:
        """Check out ``revision`` (branch, tag or sha) into ``dest``.

        Args:
            dest: Directory to clone into; must not exist yet.
            revision: Revision to build; the configured default if None.

        Returns:
            Full sha of the checked-out commit.

        Raises:
            BuildError: If the revision does not exist.
            AuthError: If the remote refused access.
            NetworkError: If the remote was unreachable or timed out.
        """
        revision = revision or self.config.default_revision
        env = {"GIT_TERMINAL_PROMPT": "0", **credential_env(self.username, self.token)}
        repo = clone(self.config.url, dest, env=env, timeout=self.timeout)
        try:
            sha = self._resolve(repo, revision)
            repo.git.checkout("--detach", sha)
        finally:
            repo.close()
        logger.info("Checked out %s at %s", revision, sha[:12])
        return sha

    @staticmethod
    def _resolve(repo, revision: str) -> str:
        for candidate in (f"origin/{revision}", revision):
            try:
                return str(repo.git.rev_parse("--verify", f"{candidate}^{{commit}}"))
            except GitCommandError as e:
                error = classify_git_error(e, "rev-parse")
                if not isinstance(error, BuildError):
                    raise error from e
        raise BuildError(
            f"Unknown revision: {revision}",
            code="unknown_revision",
        )


__all__ = ["SourceCheckout"]
