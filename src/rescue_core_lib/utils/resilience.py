"""Retry policies for the operations core.

Two kinds of transient failure are retried:
- infrastructure that is not up yet (Redis at service start)
- optimistic-concurrency conflicts, where the loser re-fetches and re-applies
"""

import logging
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from rescue_core_lib.errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_conflict_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"[Resilience] Conflict on attempt {retry_state.attempt_number} of "
        f"{retry_state.fn.__name__}; re-fetching. {exc}"
    )


# Connection verification at startup
# - Wait 2^x * 1 seconds between retries (2s, 4s, 8s, 16s, 32s)
# - Stop after 5 attempts
# - Re-raise the exception if all retries fail
service_startup_retry = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=2, max=32),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def create_conflict_retry(
    max_attempts: int = 3,
    min_wait: float = 0.05,
    max_wait: float = 1.0,
    multiplier: float = 0.1,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Create a retry decorator for read-modify-write cycles.

    Only ``ConcurrencyConflictError`` is retried; the decorated function must
    re-read the aggregate on every call. Other errors propagate immediately.

    Args:
        max_attempts: Total attempts including the first
        min_wait: Minimum wait between attempts (seconds)
        max_wait: Maximum wait between attempts (seconds)
        multiplier: Exponential backoff multiplier

    Example:
        ```python
        @create_conflict_retry(max_attempts=5)
        async def advance(escalation_id):
            escalation = await store.get(AggregateType.ESCALATION, escalation_id)
            ...
        ```
    """
    return retry(
        retry=retry_if_exception_type(ConcurrencyConflictError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        before_sleep=_log_conflict_retry,
        reraise=True,
    )


conflict_retry = create_conflict_retry()
