"""Per-run scoped workspaces.

Each run gets a private directory holding its source checkout, its manifest
clone and its container engine config. The directory is removed on every
exit path: success, failure and cancellation.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class RunWorkspace:
    """Directory layout of one run's workspace."""

    root: Path

    @property
    def source_dir(self) -> Path:
        """Application source checkout."""
        return self.root / "source"

    @property
    def manifests_dir(self) -> Path:
        """Manifest repository clone."""
        return self.root / "manifests"

    @property
    def engine_config_dir(self) -> Path:
        """Container engine client config (registry credentials)."""
        return self.root / "engine"

    def command_env(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        """Build the environment for an external command of this run.

        Registry credentials written by ``docker login`` land in this
        workspace, and git never prompts on a terminal.
        """
        env = dict(os.environ)
        env["DOCKER_CONFIG"] = str(self.engine_config_dir)
        env["GIT_TERMINAL_PROMPT"] = "0"
        if extra:
            env.update(extra)
        return env


@contextmanager
def run_workspace(base_dir: Path, label: str) -> Iterator[RunWorkspace]:
    """Create a workspace for a run and remove it afterwards.

    Args:
        base_dir: Root directory for workspaces.
        label: Human-readable prefix, e.g. ``staging-12``.

    Yields:
        RunWorkspace rooted in a fresh directory.
    """
    base_dir.mkdir(parents=True, exist_ok=True)
    root = Path(tempfile.mkdtemp(prefix=f"{label}_", dir=base_dir))
    workspace = RunWorkspace(root=root)
    workspace.engine_config_dir.mkdir(mode=0o700)
    logger.debug("Created workspace %s", root)
    try:
        yield workspace
    finally:
        shutil.rmtree(root, ignore_errors=True)
        logger.debug("Removed workspace %s", root)


__all__ = ["RunWorkspace", "run_workspace"]
