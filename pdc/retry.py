from __future__ import annotations

import time
from typing import Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import OrchestrationUnavailable

T = TypeVar("T")


def orchestration_retrying(
    attempts: int = 4,
    base_delay_s: float = 0.5,
    max_delay_s: float = 8.0,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> Retrying:
    """Retry policy for orchestration calls.

    Only OrchestrationUnavailable is retried; waits run base, 2*base, 4*base...
    capped at ``max_delay_s``. The last error is re-raised as is.
    """

    def _before_sleep(state: RetryCallState) -> None:
        if on_retry is not None and state.outcome is not None:
            on_retry(state.attempt_number, state.outcome.exception())

    return Retrying(
        stop=stop_after_attempt(max(1, int(attempts))),
        wait=wait_exponential(multiplier=base_delay_s, max=max_delay_s),
        retry=retry_if_exception_type(OrchestrationUnavailable),
        sleep=sleep,
        before_sleep=_before_sleep,
        reraise=True,
    )


def call_with_retry(
    fn: Callable[..., T],
    *args,
    attempts: int = 4,
    base_delay_s: float = 0.5,
    max_delay_s: float = 8.0,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, BaseException], None] | None = None,
    **kwargs,
) -> T:
    """Call ``fn`` and retry OrchestrationUnavailable with exponential backoff.

    Any other exception (PoolNotFound included) propagates on the first try.
    """
    retrying = orchestration_retrying(attempts, base_delay_s, max_delay_s, sleep=sleep, on_retry=on_retry)
    return retrying(fn, *args, **kwargs)
