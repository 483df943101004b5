"""Timing and retry helpers for calls into the compute platform and load balancer."""
import asyncio
import functools
import logging
import time
from typing import Any, Callable, Iterator, Optional, TypeVar, cast

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


def log_execution_time(func: F) -> F:
    """Log how long a registry operation took, at ERROR when it raised."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        started = time.monotonic()
        succeeded = False
        try:
            result = func(*args, **kwargs)
            succeeded = True
            return result
        finally:
            elapsed = time.monotonic() - started
            if succeeded:
                logger.info(f"{func.__qualname__} completed in {elapsed:.2f}s")
            else:
                logger.error(f"{func.__qualname__} failed after {elapsed:.2f}s")
    return cast(F, wrapper)


def backoff_delays(max_attempts: int, delay: float, backoff: float) -> Iterator[float]:
    """Pauses between ``max_attempts`` attempts: delay, delay * backoff, ..."""
    for retry_number in range(max_attempts - 1):
        yield delay * backoff ** retry_number


def _retry_logger(logger_name: Optional[str]) -> logging.Logger:
    return logging.getLogger(logger_name) if logger_name else logger


def retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0,
          exceptions: tuple = (Exception,), logger_name: Optional[str] = None):
    """Retry a blocking platform call on ``exceptions`` with exponential backoff.

    The last attempt's error propagates unchanged.
    """
    retry_logger = _retry_logger(logger_name)

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt, pause in enumerate(backoff_delays(max_attempts, delay, backoff), start=1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    retry_logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed ({e}), retrying in {pause:.2f}s"
                    )
                time.sleep(pause)
            try:
                return func(*args, **kwargs)
            except exceptions as e:
                retry_logger.error(f"{func.__name__} gave up after {max_attempts} attempts: {e}")
                raise
        return cast(F, wrapper)

    return decorator


async def call_with_retry(func: Callable[..., Any], *args, max_attempts: int = 3, delay: float = 1.0,
                          backoff: float = 2.0, exceptions: tuple = (Exception,),
                          logger_name: Optional[str] = None, **kwargs) -> Any:
    """Await ``func(*args, **kwargs)`` with the same schedule as ``retry``.

    The attempt budget is read at call time so callers can drive it from
    settings.
    """
    retry_logger = _retry_logger(logger_name)
    for attempt, pause in enumerate(backoff_delays(max_attempts, delay, backoff), start=1):
        try:
            return await func(*args, **kwargs)
        except exceptions as e:
            retry_logger.warning(
                f"{func.__name__} attempt {attempt}/{max_attempts} failed ({e}), retrying in {pause:.2f}s"
            )
        await asyncio.sleep(pause)
    try:
        return await func(*args, **kwargs)
    except exceptions as e:
        retry_logger.error(f"{func.__name__} gave up after {max_attempts} attempts: {e}")
        raise
