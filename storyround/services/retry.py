import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import httpx

from storyround.errors import ExternalServiceError

T = TypeVar("T")


async def call_with_retries(
    call: Callable[[], Awaitable[T]],
    label: str,
    max_retries: int = 3,
    backoff_base: float = 2,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``call`` up to ``max_retries`` times with exponential backoff

    Args:
        call (Callable[[], Awaitable[T]]): The external call to attempt
        label (str): Name used in log lines
        max_retries (int, optional): Attempts before giving up. Defaults to 3.
        backoff_base (float, optional): First wait in seconds, doubled on each retry. Defaults to 2.

    Raises:
        ExternalServiceError: Every attempt failed

    Returns:
        T: Result of the first successful attempt
    """
    last_error: Exception | None = None
    for attempt in range(1, max_retries + 1):
        try:
            return await call()
        except (ExternalServiceError, httpx.HTTPError) as e:
            last_error = e
            logging.warning(f"{label} attempt {attempt}/{max_retries} failed: {e}")
            if attempt < max_retries:
                wait = backoff_base * 2 ** (attempt - 1)
                logging.info(f"Waiting {wait}s before retrying {label}")
                await sleep(wait)
    raise ExternalServiceError(f"{label} failed after {max_retries} attempts: {last_error}")
