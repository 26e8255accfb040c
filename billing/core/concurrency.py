"""Optimistic-concurrency retry for read-modify-write cycles.

Every mutation of a Subscription goes through a versioned UPDATE that returns
``Conflict`` when another writer got there first. Callers wrap the whole
read-modify-write closure in ``retry_on_conflict`` so a lost race re-reads
fresh state and tries again, with a bounded number of attempts.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_exponential

from billing.config import settings
from billing.domain.results import Conflict, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_conflict(result: object) -> bool:
    return isinstance(result, Conflict)


def _return_last_result(retry_state: RetryCallState) -> object:
    # Attempts exhausted: hand the final Conflict back to the caller
    return retry_state.outcome.result() if retry_state.outcome else None


def _log_retry(retry_state: RetryCallState) -> None:
    conflict = retry_state.outcome.result() if retry_state.outcome else None
    logger.info(
        f"Optimistic lock conflict on {getattr(conflict, 'resource', 'resource')} "
        f"(attempt {retry_state.attempt_number}), retrying"
    )


async def retry_on_conflict(
    attempt: Callable[[], Awaitable[Result[T]]],
    max_attempts: int | None = None,
) -> Result[T]:
    """
    Run ``attempt`` until it returns something other than ``Conflict``.

    The closure must re-read the state it modifies on every call. Exceptions
    are not retried and propagate unchanged. When attempts run out the last
    ``Conflict`` is returned.
    """
    retrying = AsyncRetrying(
        retry=retry_if_result(_is_conflict),
        wait=wait_exponential(multiplier=0.02, min=0.02, max=0.5),
        stop=stop_after_attempt(max_attempts or settings.optimistic_lock_max_attempts),
        before_sleep=_log_retry,
        retry_error_callback=_return_last_result,
    )
    return await retrying(attempt)
