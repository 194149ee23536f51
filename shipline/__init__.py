"""shipline - a small self-hosted continuous-delivery orchestrator.

This package builds an application, publishes its container image and
bumps the image reference in a GitOps manifest repository, one serialized
run per target environment.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
