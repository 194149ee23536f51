"""Application build stage.

This module handles:
- Running the build and analysis commands
- Artifact discovery and checksum verification
"""

from shipline.builds.runner import ArtifactBuilder

__all__ = ["ArtifactBuilder"]
