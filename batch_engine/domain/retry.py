import random
from dataclasses import dataclass
from typing import Optional

from batch_engine.domain.errors import FatalJobError, NonRetryableError

@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0  # fraction of the delay added at random, 0 disables

def next_delay(attempts: int, policy: RetryPolicy = RetryPolicy()) -> float:
    """
    Seconds to wait before the next attempt.

    Formula:
        delay = min(base * multiplier ^ (attempts - 1), max_delay)
        if jitter:
            delay = delay + random_uniform(0, jitter * delay)

    Args:
        attempts: Attempts consumed so far. attempts=1 means "we failed once,
                  when should we try again?" and yields the base delay.
                  Values below 1 are treated as 1.
    """
    if attempts < 1:
        attempts = 1

    # Cap the exponent; 2^30 seconds is far past any sane max_delay.
    safe_exponent = min(attempts - 1, 30)

    delay = policy.base_delay * (policy.multiplier ** safe_exponent)

    if delay > policy.max_delay:
        delay = policy.max_delay

    if policy.jitter > 0:
        delay += random.uniform(0, delay * policy.jitter)

    return delay

def is_retryable(error: Optional[BaseException]) -> bool:
    if error is None:
        return True
    if isinstance(error, NonRetryableError):
        return False
    if isinstance(error, FatalJobError):
        return error.retryable
    # Infrastructure errors, timeouts and plain handler exceptions
    return True

def should_retry(attempts: int, max_attempts: int, retryable: bool = True) -> bool:
    """Retry-or-fail decision for an attempt that failed with an error classified by `is_retryable`."""
    return retryable and attempts < max_attempts
