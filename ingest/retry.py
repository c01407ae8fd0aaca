from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 2.0
    factor: float = 2.0
    max_delay_s: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (0-based): 2s, 4s, 8s, ..."""
        return min(self.base_delay_s * (self.factor**attempt), self.max_delay_s)


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> T:
    attempts = max(1, policy.max_attempts)
    last_error: BaseException | None = None
    for attempt in range(attempts):
        try:
            return operation()
        except retry_on as exc:
            last_error = exc
            if attempt >= attempts - 1:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label,
                attempt + 1,
                attempts,
                exc,
                delay,
            )
            sleep(delay)
    assert last_error is not None
    raise last_error
