"""Build artifact discovery and verification.

This module handles:
- Resolving the configured artifact glob inside a checkout
- Computing checksums
- Re-verifying an artifact before it is used downstream
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from shipline.errors import BuildError
from shipline.types import BuildArtifact

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def resolve_artifact(source_dir: Path, pattern: str) -> Path:
    """Find the single file matching the artifact glob.

    Args:
        source_dir: Checkout root the build ran in.
        pattern: Glob relative to ``source_dir``, e.g. ``target/*.jar``.

    Returns:
        Path of the artifact.

    Raises:
        BuildError: If no file or more than one file matches.
    """
    matches = sorted(p for p in source_dir.glob(pattern) if p.is_file())
    if not matches:
        raise BuildError(
            f"Build produced no artifact matching '{pattern}'",
            code="artifact_missing",
        )
    if len(matches) > 1:
        names = ", ".join(p.name for p in matches)
        raise BuildError(
            f"Artifact pattern '{pattern}' is ambiguous: {names}",
            code="artifact_ambiguous",
        )
    return matches[0]


def describe_artifact(path: Path, source_revision: str) -> BuildArtifact:
    """Checksum an artifact file and wrap it in a descriptor."""
    artifact = BuildArtifact(
        path=path,
        sha256=compute_file_hash(path),
        source_revision=source_revision,
        size_bytes=path.stat().st_size,
    )
    logger.info(
        "Artifact %s (sha256=%s, size=%d)",
        path.name,
        artifact.sha256[:16],
        artifact.size_bytes,
    )
    return artifact


def verify_artifact(artifact: BuildArtifact) -> None:
    """Recompute an artifact's checksum and compare it to the descriptor.

    Raises:
        BuildError: If the file is gone or its content changed.
    """
    if not artifact.path.is_file():
        raise BuildError(
            f"Artifact missing: {artifact.path}",
            code="artifact_missing",
        )
    actual = compute_file_hash(artifact.path)
    if actual != artifact.sha256:
        raise BuildError(
            f"Artifact checksum mismatch for {artifact.path.name}: "
            f"expected {artifact.sha256}, got {actual}",
            code="checksum_mismatch",
        )


__all__ = [
    "HASH_CHUNK_SIZE",
    "compute_file_hash",
    "describe_artifact",
    "resolve_artifact",
    "verify_artifact",
]
