"""Shared type definitions for shipline.

This module contains enums, dataclasses and type aliases shared across
subpackages to avoid circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

DOCKER_HUB_PREFIXES = ("docker.io/", "index.docker.io/", "registry-1.docker.io/")


class RunStatus(str, Enum):
    """Status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is allowed."""
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class Stage(str, Enum):
    """Position of a run in the state machine."""

    PENDING = "pending"
    CHECKOUT = "checkout"
    BUILDING = "building"
    PUBLISHING_IMAGE = "publishing_image"
    PATCHING_MANIFEST = "patching_manifest"
    PUBLISHING_MANIFEST = "publishing_manifest"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Stages that do work, in execution order
STAGE_ORDER: tuple[Stage, ...] = (
    Stage.CHECKOUT,
    Stage.BUILDING,
    Stage.PUBLISHING_IMAGE,
    Stage.PATCHING_MANIFEST,
    Stage.PUBLISHING_MANIFEST,
)


class StageOutcome(str, Enum):
    """Outcome of a single stage attempt."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class TriggerKind(str, Enum):
    """What caused a run to be created."""

    PUSH = "push"
    MANUAL = "manual"
    SCHEDULE = "schedule"


@dataclass(frozen=True)
class BuildArtifact:
    """Descriptor of a compiled build output."""

    path: Path
    sha256: str
    source_revision: str
    size_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "path": str(self.path),
            "sha256": self.sha256,
            "source_revision": self.source_revision,
            "size_bytes": self.size_bytes,
        }


def split_image(image: str) -> tuple[str, str | None]:
    """Split an image string into repository and tag.

    A digest suffix (``@sha256:...``) is dropped. A colon only starts a tag
    when it comes after the last slash, so registry ports are kept.

    Args:
        image: Image reference such as ``registry:5000/team/app:1.2``.

    Returns:
        Tuple of (repository, tag or None).
    """
    name = image.strip().partition("@")[0]
    slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > slash:
        return name[:colon], name[colon + 1 :]
    return name, None


def normalize_repository(repository: str) -> str:
    """Normalize Docker Hub spellings of a repository name.

    ``docker.io/library/nginx``, ``library/nginx`` and ``nginx`` all
    normalize to ``nginx``.
    """
    repo = repository.strip().lower()
    for prefix in DOCKER_HUB_PREFIXES:
        if repo.startswith(prefix):
            repo = repo[len(prefix) :]
            break
    return repo.removeprefix("library/")


@dataclass(frozen=True)
class ImageReference:
    """Fully qualified image name plus its unique tag."""

    repository: str
    tag: str

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}"

    @classmethod
    def parse(cls, image: str) -> ImageReference:
        """Parse ``repository:tag``; raises ValueError if the tag is missing."""
        repository, tag = split_image(image)
        if not repository or not tag:
            raise ValueError(f"Image reference needs a repository and tag: {image!r}")
        return cls(repository=repository, tag=tag)

    def matches(self, image: str) -> bool:
        """Whether ``image`` names the same repository, whatever its tag."""
        repository, _ = split_image(image)
        return normalize_repository(repository) == normalize_repository(
            self.repository
        )


@dataclass(frozen=True)
class Success:
    """Stage attempt succeeded."""

    output: dict[str, Any] = field(default_factory=dict)
    outcome = StageOutcome.SUCCESS


@dataclass(frozen=True)
class Retryable:
    """Stage attempt failed transiently."""

    error: Exception
    outcome = StageOutcome.RETRYABLE


@dataclass(frozen=True)
class Fatal:
    """Stage attempt failed and the run must stop."""

    error: Exception
    outcome = StageOutcome.FATAL


StageResult = Success | Retryable | Fatal


__all__ = [
    "BuildArtifact",
    "Fatal",
    "ImageReference",
    "Retryable",
    "RunStatus",
    "STAGE_ORDER",
    "Stage",
    "StageOutcome",
    "StageResult",
    "Success",
    "TriggerKind",
    "normalize_repository",
    "split_image",
]
