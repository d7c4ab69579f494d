"""
Retry policy shared by the burst worker and the single-shot drain.
"""

from dataclasses import dataclass

from image_queue.config import Settings, get_settings


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Capped exponential backoff as a function of attempts.

    `attempts` counts claims, so the first failure is seen with attempts=1.
    """

    max_retries: int = 3
    base_seconds: float = 10.0
    cap_seconds: float = 300.0

    def delay_for(self, attempts: int) -> float:
        """Seconds to wait before the job is eligible again."""
        exponent = max(attempts, 1) - 1
        return min(self.base_seconds * 2**exponent, self.cap_seconds)

    def is_exhausted(self, attempts: int) -> bool:
        """Whether a failure at `attempts` should be terminal."""
        return attempts >= self.max_retries

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BackoffPolicy":
        settings = settings or get_settings()
        return cls(
            max_retries=settings.worker_max_retries,
            base_seconds=settings.queue_backoff_base_seconds,
            cap_seconds=settings.queue_backoff_max_seconds,
        )
