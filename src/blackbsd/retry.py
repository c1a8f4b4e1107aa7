"""Exponential backoff shared by provider calls, status polling and SSH readiness."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    wait_exponential,
    wait_random,
)

from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounds for one retry loop.

    ``max_elapsed`` and ``max_attempts`` may both be set; whichever is hit
    first stops the loop. ``None`` disables that bound.
    """

    initial_interval: float = 0.5
    max_interval: float = 60.0
    multiplier: float = 1.5
    jitter: float = 0.5
    max_elapsed: float | None = None
    max_attempts: int | None = None


# Provider create: a few quick retries for rate limiting and 5xx.
CREATE_POLICY = BackoffPolicy(max_attempts=3)
# Server status transitions.
STATUS_POLICY = BackoffPolicy(max_elapsed=600.0)
# Provider actions (rescue enable, reset).
ACTION_POLICY = BackoffPolicy(initial_interval=1.0, max_interval=10.0, max_elapsed=600.0)
# SSH port reachability after provisioning or a rescue boot.
READY_POLICY = BackoffPolicy(initial_interval=2.0, max_elapsed=300.0)


class Permanent(Exception):  # noqa: N818
    """Wrap an error to stop retrying immediately."""

    def __init__(self, error: BaseException):
        self.error = error
        super().__init__(str(error))


def _stop_for(policy: BackoffPolicy):
    stop = stop_never
    if policy.max_elapsed is not None:
        stop = stop_after_delay(policy.max_elapsed)
    if policy.max_attempts is not None:
        attempts = stop_after_attempt(policy.max_attempts)
        stop = attempts if stop is stop_never else stop | attempts
    return stop


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    is_permanent: Callable[[BaseException], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    name: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``policy`` is exhausted.

    Errors raised as ``Permanent`` (unwrapped before re-raising) or matching
    ``is_permanent`` stop the loop at once. Cancellation is never retried.
    On exhaustion the last error is re-raised.
    """

    def should_retry(exc: BaseException) -> bool:
        if not isinstance(exc, Exception) or isinstance(exc, Permanent):
            return False
        return not (is_permanent and is_permanent(exc))

    def before_sleep(retry_state) -> None:
        logger.debug(
            "retry_scheduled",
            operation=name,
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )

    retrying = AsyncRetrying(
        stop=_stop_for(policy),
        wait=wait_exponential(
            multiplier=policy.initial_interval,
            max=policy.max_interval,
            exp_base=policy.multiplier,
        )
        + wait_random(0, policy.jitter),
        retry=retry_if_exception(should_retry),
        sleep=sleep,
        before_sleep=before_sleep,
        reraise=True,
    )

    try:
        return await retrying(operation)
    except Permanent as exc:
        raise exc.error from exc.error.__cause__
