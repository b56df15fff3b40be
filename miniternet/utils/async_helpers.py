# miniternet/utils/async_helpers.py
"""
Async utilities for safe task management.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Coroutine, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def create_safe_task(
    coro: Coroutine[Any, Any, Any],
    name: Optional[str] = None,
    log_errors: bool = True
) -> asyncio.Task:
    """
    Create an asyncio task with automatic error handling.

    This prevents fire-and-forget tasks from silently swallowing exceptions.

    Args:
        coro: The coroutine to run as a task
        name: Optional name for the task (for logging)
        log_errors: Whether to log errors (default True)

    Returns:
        The created asyncio.Task
    """
    task = asyncio.create_task(coro, name=name)

    def _handle_exception(t: asyncio.Task):
        if t.cancelled():
            return
        exc = t.exception()
        if exc and log_errors:
            task_name = name or t.get_name()
            logger.error(f"[AsyncTask:{task_name}] Unhandled exception: {exc}", exc_info=exc)

    task.add_done_callback(_handle_exception)
    return task


async def run_with_timeout(
    coro: Coroutine[Any, Any, T],
    timeout: float,
    default: Any = None,
    name: Optional[str] = None
) -> Any:
    """
    Run a coroutine with a timeout, returning a default value on timeout.

    Other exceptions propagate.

    Args:
        coro: The coroutine to run
        timeout: Timeout in seconds
        default: Value to return if timeout occurs
        name: Optional name for logging
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        task_name = name or "unknown"
        logger.warning(f"[AsyncTask:{task_name}] Timed out after {timeout}s")
        return default


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    attempt_timeout: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    max_delay: float = 30.0,
    jitter: float = 0.1,
    name: Optional[str] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await ``operation()`` until it succeeds, sleeping base_delay * 2**n between
    attempts (capped at max_delay, with a little jitter).

    Each attempt is bounded by ``attempt_timeout`` when given; a timed out
    attempt counts as a failed one. The last error is re-raised once all
    attempts are used up.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    task_name = name or getattr(operation, "__name__", "operation")
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            if attempt_timeout is not None:
                return await asyncio.wait_for(operation(), timeout=attempt_timeout)
            return await operation()
        except asyncio.TimeoutError as e:
            last_error = e
        except retry_on as e:
            last_error = e

        if attempt == attempts:
            break
        delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
        delay += delay * jitter * random.random()
        logger.warning(
            f"[Retry:{task_name}] attempt {attempt}/{attempts} failed "
            f"({type(last_error).__name__}: {last_error}); retrying in {delay:.2f}s"
        )
        await sleep(delay)

    assert last_error is not None
    raise last_error
