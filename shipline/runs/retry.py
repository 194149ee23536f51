"""Per-stage retry policy with exponential backoff."""

from __future__ import annotations

import random
from dataclasses import dataclass

from shipline.config import Settings
from shipline.types import Stage


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget of one stage.

    Attributes:
        max_attempts: Attempts including the first one.
        base_delay_s: Delay before the first retry.
        backoff_factor: Multiplier applied per further retry.
        max_delay_s: Upper bound of a single delay.
        jitter: Randomize delays between 50% and 150%.
    """

    max_attempts: int
    base_delay_s: float = 2.0
    backoff_factor: float = 2.0
    max_delay_s: float = 60.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay = self.base_delay_s * (self.backoff_factor ** (attempt - 1))
        if self.jitter:
            delay *= 0.5 + random.random()  # noqa: S311
        return min(delay, self.max_delay_s)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


def stage_policies(settings: Settings) -> dict[Stage, RetryPolicy]:
    """Build each working stage's retry policy from settings."""
    budgets = {
        Stage.CHECKOUT: settings.checkout_attempts,
        Stage.BUILDING: settings.build_attempts,
        Stage.PUBLISHING_IMAGE: settings.publish_image_attempts,
        Stage.PATCHING_MANIFEST: settings.patch_attempts,
        Stage.PUBLISHING_MANIFEST: settings.publish_manifest_attempts,
    }
    return {
        stage: RetryPolicy(
            max_attempts=attempts,
            base_delay_s=settings.retry_base_delay,
            backoff_factor=settings.retry_backoff_factor,
            max_delay_s=settings.retry_max_delay,
        )
        for stage, attempts in budgets.items()
    }


__all__ = ["RetryPolicy", "stage_policies"]
