"""Reconnect backoff built on tenacity, driven by RetryConfig.

The watcher itself never retries; only the runner uses this, to
reconnect after a failed start or a lost connection.
"""

from __future__ import annotations

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import MailConnectionError

logger = structlog.get_logger()


def reconnect_policy(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (MailConnectionError,),
) -> AsyncRetrying:
    """Return an ``AsyncRetrying`` iterator configured from *config*.

    Usage::

        async for attempt in reconnect_policy(config.retry):
            with attempt:
                await connect_once()
    """
    return AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=_log_before_sleep,
        reraise=True,
    )


def _log_before_sleep(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    wait = retry_state.next_action.sleep if retry_state.next_action else None
    logger.warning(
        "reconnect_scheduled",
        attempt=retry_state.attempt_number,
        wait_seconds=wait,
        error=str(error),
    )
