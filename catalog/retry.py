from collections.abc import Callable
import logging
import time
from typing import TypeVar

from catalog.errors import DependencyUnavailableError


logger = logging.getLogger(__name__)
T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    pass


def run_with_retries(
    fn: Callable[[], T],
    *,
    action: str,
    max_retries: int,
    backoff_seconds: float,
    retry_on: tuple[type[Exception], ...] = (DependencyUnavailableError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 2):
        try:
            return fn()
        except retry_on as exc:
            last_error = exc
            logger.info("attempt failed", extra={"action": action, "attempt": attempt, "error": str(exc)})
            if attempt > max_retries:
                break
            sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(f"{action} failed after {max_retries + 1} attempts: {last_error}") from last_error
