"""Structural image patching for manifests.

The patch target is every container whose image names the published
repository, whatever tag it currently carries: a placeholder, a previous
run's tag or a digest. Patching with A and then B leaves B.
"""

from __future__ import annotations

import logging

from shipline.errors import PatchError
from shipline.manifests.document import ImageField, ManifestDocument
from shipline.types import ImageReference

logger = logging.getLogger(__name__)


def find_targets(document: ManifestDocument, image: ImageReference) -> list[ImageField]:
    """Return the image fields that name ``image``'s repository.

    Raises:
        PatchError: If the manifest has no image field or none matches.
    """
    fields = document.image_fields()
    if not fields:
        raise PatchError(
            "Manifest has no container image field",
            code="image_field_missing",
        )
    targets = [f for f in fields if image.matches(f.value)]
    if not targets:
        found = ", ".join(sorted({f.value for f in fields}))
        raise PatchError(
            f"No container image matches repository '{image.repository}' "
            f"(found: {found})",
            code="repository_mismatch",
        )
    return targets


def patch_manifest(
    document: ManifestDocument, image: ImageReference
) -> ManifestDocument:
    """Point the matching container images at ``image``.

    The document is modified in place and returned. Nothing but the
    matching image scalars changes.

    Args:
        document: Parsed manifest.
        image: Newly published image.

    Returns:
        The same document.

    Raises:
        PatchError: If the patch target is absent or ambiguous in structure.
    """
    targets = find_targets(document, image)
    document.replace_images(targets, str(image))
    document.applied_image = image
    logger.info(
        "Patched %s to %s",
        ", ".join(t.path for t in targets),
        image,
    )
    return document


class ManifestPatcher:
    """Stage collaborator wrapping ``patch_manifest``."""

    def patch(
        self, document: ManifestDocument, image: ImageReference
    ) -> ManifestDocument:
        return patch_manifest(document, image)


__all__ = ["ManifestPatcher", "find_targets", "patch_manifest"]
