"""Container image publishing stage."""

from shipline.images.publisher import ImagePublisher

__all__ = ["ImagePublisher"]
