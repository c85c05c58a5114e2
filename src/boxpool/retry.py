"""Bounded retry-until-success primitive.

Every wait on an eventually consistent collaborator (inventory index,
block-device node, guest SSH) goes through ``retry_operation``: a fixed
interval between attempts, an overall deadline, and a name used in logs and
in the timeout error. Exhaustion raises RetryTimeoutError carrying the last
error the operation produced.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from boxpool import constants
from boxpool._logging import get_logger
from boxpool.exceptions import RetryTimeoutError

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str,
    timeout: float = constants.DEFAULT_RETRY_TIMEOUT_SECONDS,
    interval: float = constants.DEFAULT_RETRY_INTERVAL_SECONDS,
    max_attempts: int = 0,
    retry_on: type[BaseException] | tuple[type[BaseException], ...] = Exception,
) -> T:
    """Run ``operation`` until it returns, fails non-retryably, or time runs out.

    The first attempt runs immediately; later attempts are ``interval``
    seconds apart. An attempt still in flight when the deadline passes is
    cancelled.

    Args:
        operation: Zero-argument coroutine factory. Raising means "not yet".
        operation_name: Used in log lines and the timeout message.
        timeout: Overall deadline in seconds.
        interval: Seconds between attempts.
        max_attempts: Stop after this many attempts (0 = unlimited).
        retry_on: Exception types that trigger another attempt. Anything
            else propagates unchanged.

    Returns:
        Whatever ``operation`` returned on its first successful attempt.

    Raises:
        RetryTimeoutError: Deadline or attempt budget exhausted.
    """
    last_error: BaseException | None = None

    def _record(retry_state: RetryCallState) -> None:
        nonlocal last_error
        if retry_state.outcome is not None and retry_state.outcome.failed:
            last_error = retry_state.outcome.exception()
        logger.debug(
            "Retrying %s: %s",
            operation_name,
            last_error,
            extra={"operation": operation_name, "attempt": retry_state.attempt_number},
        )

    stop = stop_after_delay(timeout)
    if max_attempts > 0:
        stop = stop | stop_after_attempt(max_attempts)

    try:
        async with asyncio.timeout(timeout):
            async for attempt in AsyncRetrying(
                stop=stop,
                wait=wait_fixed(interval),
                retry=retry_if_exception_type(retry_on),
                before_sleep=_record,
            ):
                with attempt:
                    result = await operation()
                    if attempt.retry_state.attempt_number > 1:
                        logger.debug(
                            "%s completed after %d attempts",
                            operation_name,
                            attempt.retry_state.attempt_number,
                            extra={"operation": operation_name},
                        )
                    return result
    except RetryError as e:
        raise RetryTimeoutError(operation_name, timeout, e.last_attempt.exception()) from e
    except TimeoutError as e:
        raise RetryTimeoutError(operation_name, timeout, last_error) from e

    raise AssertionError("unreachable")  # pragma: no cover
