import logging
import random
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

_RETRYABLE_MARKERS = ("429", "overloaded", "rate limit", "timeout", "timed out", "503", "temporarily unavailable")


def is_retryable_error(exc: BaseException) -> bool:
    error_str = str(exc).lower()
    return any(marker in error_str for marker in _RETRYABLE_MARKERS)


def call_with_retries(
    func: Callable[[], Any],
    max_retries: int = 2,
    backoff_factor: float = 2.0,
    initial_delay: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Executes a function with exponential backoff retries for transient errors
    (rate limits, overload, timeouts). Other errors propagate immediately.
    """
    attempt = 0
    while True:
        try:
            return func()
        except Exception as e:
            if not is_retryable_error(e) or attempt >= max_retries:
                raise

            delay = initial_delay * (backoff_factor ** attempt)
            total_delay = delay + random.uniform(0, delay * 0.25)
            logger.info(
                "COLLABORATOR_RETRY attempt=%s/%s delay=%.2fs error=%s",
                attempt + 1,
                max_retries,
                total_delay,
                str(e)[:200],
            )
            sleep(total_delay)
            attempt += 1
