from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TypeVar

import requests.exceptions

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    jitter: float
    retryable_exceptions: tuple[type[Exception], ...]

    def with_attempts(self, max_attempts: int) -> RetryPolicy:
        if max_attempts < 1:
            raise ValueError("max_attempts debe ser al menos 1")
        return replace(self, max_attempts=max_attempts)


# sendBill registers the document on arrival, so only failures where the
# request never left the client are retried. ConnectTimeout subclasses
# ConnectionError; ReadTimeout does not and leaves the outcome unknown.
SUNAT_SEND = RetryPolicy(
    name="sendBill",
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(requests.exceptions.ConnectionError,),
)


def _calc_delay(attempt: int, policy: RetryPolicy) -> float:
    """Exponential backoff capped at max_delay, with +/- jitter.

    *attempt* counts failures so far, starting at 0.
    """
    delay = min(policy.base_delay * (policy.backoff_factor**attempt), policy.max_delay)
    spread = delay * policy.jitter
    return max(0.0, delay + random.uniform(-spread, spread))


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> T:
    """Call *func* until it succeeds or *policy* runs out of attempts.

    Exceptions outside ``policy.retryable_exceptions`` propagate at once; the
    last retryable one is re-raised when attempts are exhausted.
    """
    for attempt in range(policy.max_attempts):
        try:
            return func()
        except policy.retryable_exceptions as exc:
            if attempt == policy.max_attempts - 1:
                logger.warning("%s failed after %d attempts", policy.name, policy.max_attempts)
                raise
            delay = _calc_delay(attempt, policy)
            logger.warning(
                "%s attempt %d/%d failed with %s, retrying in %.1fs",
                policy.name,
                attempt + 1,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            sleep_func(delay)
    raise ValueError(f"{policy.name}: max_attempts debe ser al menos 1")
