import pytest

from batch_engine.domain.errors import (
    AttemptTimeoutError,
    FatalJobError,
    HandlerNotFoundError,
    MalformedPayloadError,
    UnknownOperationError,
)
from batch_engine.domain.retry import RetryPolicy, is_retryable, next_delay, should_retry

def test_default_backoff_sequence():
    assert [next_delay(a) for a in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]

def test_backoff_is_capped():
    assert next_delay(10) == 60.0
    assert next_delay(1000) == 60.0

def test_attempts_below_one_use_base_delay():
    assert next_delay(0) == 2.0
    assert next_delay(-3) == 2.0

def test_delays_non_decreasing():
    policy = RetryPolicy(base_delay=0.5, multiplier=3.0, max_delay=20.0)
    delays = [next_delay(a, policy) for a in range(1, 12)]
    assert delays == sorted(delays)

def test_jitter_stays_within_bounds():
    policy = RetryPolicy(base_delay=2.0, jitter=0.5)
    for _ in range(50):
        assert 2.0 <= next_delay(1, policy) <= 3.0

@pytest.mark.parametrize("error,expected", [
    (None, True),
    (RuntimeError("connection reset"), True),
    (AttemptTimeoutError(5), True),
    (FatalJobError("store down"), True),
    (FatalJobError("bad data", retryable=False), False),
    (HandlerNotFoundError("unknown.op"), False),
    (MalformedPayloadError("items must be a list"), False),
    (UnknownOperationError("entity.update", "explode"), False),
])
def test_is_retryable(error, expected):
    assert is_retryable(error) is expected

def test_should_retry():
    assert should_retry(1, 3)
    assert should_retry(2, 3, is_retryable(RuntimeError("x")))
    assert not should_retry(3, 3)
    assert not should_retry(1, 3, is_retryable(MalformedPayloadError("x")))
