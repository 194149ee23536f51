"""Manifest patching and publishing stages.

This module handles:
- Parsing manifests while keeping their exact text
- Structural image patching
- Committing and pushing to the manifest repository
"""

from shipline.manifests.document import ManifestDocument
from shipline.manifests.patcher import ManifestPatcher, patch_manifest
from shipline.manifests.publisher import ManifestPublisher, PublishResult

__all__ = [
    "ManifestDocument",
    "ManifestPatcher",
    "ManifestPublisher",
    "PublishResult",
    "patch_manifest",
]
