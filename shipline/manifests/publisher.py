"""Manifest repository publishing.

This module handles:
- Cloning the manifest repository and loading an environment's manifest
- Committing the patched manifest with the run label in the message
- The fetch-patch-push loop when the remote branch moved meanwhile

Nothing reaches the remote except through a plain (never forced) push of
a single commit, so a failure anywhere leaves the remote as it was.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from git import Actor, Repo
from pydantic import SecretStr

from shipline.errors import ConflictError, PatchError
from shipline.manifests.document import ManifestDocument
from shipline.manifests.patcher import ManifestPatcher
from shipline.pipeline.schema import ManifestConfig
from shipline.scm import git as gitops
from shipline.types import ImageReference

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    """Outcome of a manifest publish.

    Attributes:
        commit: Sha of the remote branch head after publishing.
        changed: False when the remote already carried the patched content.
        attempts: Push rounds used.
    """

    commit: str
    changed: bool
    attempts: int


class ManifestPublisher:
    """Commits and pushes patched manifests."""

    def __init__(
        self,
        config: ManifestConfig,
        patcher: ManifestPatcher | None = None,
        timeout: int | None = None,
        push_attempts: int = 3,
        username: str = "x-access-token",
        token: SecretStr | None = None,
    ) -> None:
        self.config = config
        self.patcher = patcher or ManifestPatcher()
        self.timeout = timeout
        self.push_attempts = push_attempts
        self.username = username
        self.token = token

    def _env(self) -> dict[str, str]:
        return {
            "GIT_TERMINAL_PROMPT": "0",
            **gitops.credential_env(self.username, self.token),
        }

    def prepare(
        self, clone_dir: Path, branch: str, manifest_path: str
    ) -> ManifestDocument:
        """Clone the manifest branch and load one manifest.

        Raises:
            PatchError: If the manifest file is missing or not YAML.
            AuthError, NetworkError, BuildError: Classified clone failures.
        """
        repo = gitops.clone(
            self.config.url,
            clone_dir,
            branch=branch,
            env=self._env(),
            timeout=self.timeout,
        )
        repo.close()
        path = clone_dir / manifest_path
        if not path.resolve().is_relative_to(clone_dir.resolve()):
            raise PatchError(
                f"Manifest path escapes the repository: {manifest_path}",
                code="manifest_path_invalid",
            )
        return ManifestDocument.load(path)

    def publish(self, document: ManifestDocument, run_label: str) -> PublishResult:
        """Commit and push a patched manifest.

        Every round starts from the remote-tracking head: the manifest is
        reloaded from it and the document's last patch is re-applied, so a
        concurrent update is never clobbered and the pushed commit carries
        exactly one image change. Rounds after a rejected push fetch first.

        Args:
            document: Manifest loaded by ``prepare`` and patched.
            run_label: Run identifier embedded in the commit message.

        Returns:
            PublishResult for the remote head.

        Raises:
            ConflictError: Still rejected after all rounds; not retryable.
            AuthError: Remote refused credentials.
            NetworkError: Remote unreachable or timed out.
            PatchError: Document was never patched or not loaded from a clone.
        """
        if document.source_path is None or document.applied_image is None:
            raise PatchError(
                "Only a patched manifest loaded from a clone can be published",
                code="manifest_not_patched",
            )

        repo = Repo(document.source_path.parent, search_parent_directories=True)
        try:
            result = self._publish(
                repo, document.source_path, document.applied_image, run_label
            )
        finally:
            repo.close()
        if result.changed:
            document.reload()
        return result

    def _publish(
        self,
        repo: Repo,
        source_path: Path,
        image: ImageReference,
        run_label: str,
    ) -> PublishResult:
        branch = repo.active_branch.name
        work_tree = Path(str(repo.working_tree_dir))
        rel_path = source_path.resolve().relative_to(work_tree.resolve()).as_posix()
        env = self._env()
        author = Actor(self.config.author_name, self.config.author_email)
        message = f"shipline: deploy {image} ({run_label})"
        last_conflict: ConflictError | None = None

        for attempt in range(1, self.push_attempts + 1):
            if attempt > 1:
                gitops.fetch(repo, branch, env=env, timeout=self.timeout)
            repo.git.reset("--hard", f"origin/{branch}")

            fresh = ManifestDocument.load(source_path)
            before = fresh.serialize()
            self.patcher.patch(fresh, image)
            if fresh.serialize() == before:
                head = repo.head.commit.hexsha
                logger.info("Manifest %s already at %s", rel_path, image)
                return PublishResult(commit=head, changed=False, attempts=attempt)

            fresh.save()
            repo.index.add([rel_path])
            commit = repo.index.commit(message, author=author, committer=author)

            try:
                gitops.push(repo, branch, env=env, timeout=self.timeout)
            except ConflictError as e:
                last_conflict = e
                logger.warning(
                    "Push of %s rejected, remote moved (round %d/%d)",
                    rel_path,
                    attempt,
                    self.push_attempts,
                )
                continue

            logger.info("Pushed %s to %s as %s", rel_path, branch, commit.hexsha[:12])
            return PublishResult(commit=commit.hexsha, changed=True, attempts=attempt)

        raise ConflictError(
            f"Manifest push still rejected after {self.push_attempts} rounds",
            response=last_conflict.response if last_conflict else None,
            code="conflict_exhausted",
            retryable=False,
        )


__all__ = ["ManifestPublisher", "PublishResult"]
