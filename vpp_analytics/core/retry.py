"""Retrying collaborator calls with exponential backoff via tenacity.

Transient collaborator failures (``CollaboratorUnavailableError``,
``ConnectionError``, ``TimeoutError``) are retried; anything else propagates
on the first attempt. After the last attempt the original exception is
re-raised so the caller decides whether to degrade or fail.
"""

from __future__ import annotations

from typing import Any, Callable

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from vpp_analytics.core.exceptions import CollaboratorUnavailableError
from vpp_analytics.core.interfaces import resolve

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    CollaboratorUnavailableError,
    ConnectionError,
    TimeoutError,
)


def backoff(wait_seconds: float) -> Any:
    """Exponential wait scaled by *wait_seconds*, capped at 10x, plus jitter."""
    return wait_exponential(multiplier=wait_seconds, max=wait_seconds * 10) + wait_random(
        0, wait_seconds
    )


async def call_collaborator(
    fn: Callable[..., Any],
    *args: Any,
    attempts: int = 3,
    wait_seconds: float = 0.1,
    **kwargs: Any,
) -> Any:
    """Call a (sync or async) collaborator method with retries.

    Args:
        fn: Bound collaborator method.
        attempts: Total attempts including the first one (minimum 1).
        wait_seconds: Initial backoff; doubles per attempt with jitter.

    Returns:
        The collaborator's (awaited) return value.
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(max(1, attempts)),
        wait=backoff(wait_seconds),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.debug(
                    "collaborator_retry",
                    call=getattr(fn, "__qualname__", repr(fn)),
                    attempt=attempt.retry_state.attempt_number,
                )
            return await resolve(fn(*args, **kwargs))

    # Unreachable: reraise=True propagates the last error
    raise CollaboratorUnavailableError("collaborator call exhausted retries")
