"""
Retry utilities for read-modify-write sequences against the Kubernetes API.

Provides a generic fixed-delay retry combinator on top of tenacity, independent
of any specific resource type.
"""
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from backup_controller.config.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


async def retry_fixed(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    operation: Optional[str] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Call an async function until it succeeds or the attempt budget is spent.

    Every attempt calls ``func`` from scratch, so a fetch-mutate-write step
    re-reads the latest object each time.

    Args:
        func: Zero-argument async callable performing one attempt
        attempts: Maximum number of attempts (including the first)
        delay: Seconds to wait between attempts
        retry_on: Exception types that trigger another attempt
        give_up_on: Exception types that are raised immediately, even if
            they also match retry_on
        operation: Name used in log events (defaults to func's name)
        on_retry: Callback invoked with (attempt number, error) before sleeping

    Returns:
        Result of the first successful attempt

    Raises:
        The exception of the final attempt, unchanged

    Example:
        result = await retry_fixed(
            lambda: store.update_backup_status(backup),
            attempts=25,
            delay=1.0,
            retry_on=(ConflictError,),
        )
    """
    name = operation or getattr(func, "__name__", "operation")

    def should_retry(error: BaseException) -> bool:
        if give_up_on and isinstance(error, give_up_on):
            return False
        return isinstance(error, retry_on)

    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            "operation_failed_retrying",
            operation=name,
            attempt=state.attempt_number,
            max_attempts=attempts,
            delay_seconds=delay,
            error_type=type(error).__name__,
            error=str(error),
        )
        if on_retry and error is not None:
            on_retry(state.attempt_number, error)

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_exception(should_retry),
        before_sleep=before_sleep,
        reraise=True,
    ):
        with attempt:
            return await func()

    # AsyncRetrying either returns from the block above or re-raises
    raise RuntimeError(f"{name} exhausted without result")
