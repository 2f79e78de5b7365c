import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from core.config import settings
from core.errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    Only errors accepted by ``retryable`` are retried (version conflicts and transient
    store I/O by default). Business-rule failures propagate on the first attempt.
    """

    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    retryable: Callable[[BaseException], bool] = field(default=is_retryable)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.deduction_max_attempts,
            base_delay=settings.deduction_retry_base_delay,
            max_delay=settings.deduction_retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        # attempt is 1-based; first retry waits base_delay
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        label: str = "operation",
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        attempt = 1
        while True:
            try:
                return await fn()
            except Exception as e:
                if not self.retryable(e) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{label} failed ({e.__class__.__name__}), retry {attempt}/{self.max_attempts - 1} in {delay:.3f}s"
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                attempt += 1
                if delay > 0:
                    await asyncio.sleep(delay)


NO_RETRY = RetryPolicy(max_attempts=1)
