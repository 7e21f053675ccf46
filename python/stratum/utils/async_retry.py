"""
stratum/utils/async_retry.py

Provides a decorator to retry an async function with bounded exponential
backoff. Only exceptions accepted by the `retry_on` predicate are retried;
anything else propagates on the first failure.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def backoff_delay(attempt_number: int, base_delay: float, max_delay: float) -> float:
    """Return the sleep before attempt `attempt_number + 1`.

    The delay doubles with each attempt (base, 2*base, 4*base, ...) and never
    exceeds `max_delay`.
    """
    return min(max_delay, base_delay * (2 ** (attempt_number - 1)))


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Callable[[BaseException], bool] = lambda exc: True,
    noisy: bool = False,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. After the
    n-th failed attempt it sleeps `min(max_delay, delay * 2**(n-1))` seconds.
    Exceptions for which `retry_on` returns False are re-raised immediately.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Base delay in seconds for the first backoff. Defaults to 1.0.
        max_delay (float, optional):
            Upper bound for any single backoff. Defaults to 30.0.
        retry_on (Callable[[BaseException], bool], optional):
            Predicate deciding whether an exception is retryable. Defaults to
            retrying every exception.
        noisy (bool, optional):
            If True, logs a warning on each retried failure and an error if all
            attempts fail. Defaults to False.

    Returns:
        Callable[[Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]]:
            A decorator that, when applied to an async function, returns a wrapped
            version that retries on retryable exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not retry_on(exc):
                        raise

                    if remaining > 1:
                        wait = backoff_delay(attempt_number, delay, max_delay)
                        if noisy:
                            logger.warning(
                                "Attempt %d/%d for %r failed: %s. Retrying in %.2fs.",
                                attempt_number,
                                retries,
                                func.__qualname__,
                                exc,
                                wait,
                            )
                        await asyncio.sleep(wait)
                        return await attempt(remaining - 1, attempt_number + 1)

                    if noisy:
                        logger.error(
                            "All %d attempts failed for %r: %s",
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    raise

            return await attempt(retries, 1)

        return wrapper

    return decorator
