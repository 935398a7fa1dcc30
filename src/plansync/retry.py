import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import MaxRetriesExceeded

T = TypeVar("T")

MAX_ATTEMPTS = 3
BASE_DELAY = 1.0


def retry_all(exc: BaseException) -> bool:
    return True


async def execute_with_retry(
    thunk: Callable[[], Awaitable[T]],
    max_attempts: int = MAX_ATTEMPTS,
    base_delay: float = BASE_DELAY,
    *,
    is_retryable: Callable[[BaseException], bool] = retry_all,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "remote call",
) -> T:
    """
    Awaits `thunk()` up to `max_attempts` times.

    After failed attempt `n` (counted from 1) it waits `base_delay * 2 ** (n - 1)`
    seconds before trying again. When the attempts run out the last error is
    re-raised as is. Every error is retried unless `is_retryable` says otherwise,
    in which case it is raised immediately.
    """
    attempt = 0
    while attempt < max_attempts:
        try:
            return await thunk()
        except Exception as e:
            attempt += 1
            if not is_retryable(e):
                logging.warning(f"{description} failed with a non-retryable error: {e!r}")
                raise
            if attempt >= max_attempts:
                logging.error(f"{description} failed after {attempt} attempt(s): {e!r}")
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logging.warning(
                f"{description} attempt {attempt}/{max_attempts} failed: {e!r}; retrying in {delay}s"
            )
            await sleep(delay)

    raise MaxRetriesExceeded(f"{description}: max retries exceeded")
