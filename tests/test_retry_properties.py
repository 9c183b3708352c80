"""Property-based tests for retry logic with exponential backoff."""

from datetime import datetime

import structlog
from hypothesis import given, settings, strategies as st

from ctsync.errors import (
    CycleFailedError,
    CycleInProgressError,
    CycleTimeoutError,
    HistoryExpiredError,
    SchemaMismatchError,
    TransientSourceError,
)
from ctsync.sync.models import CycleReport, CycleState
from ctsync.utils.retry import backoff_delay, exponential_backoff_retry, is_retryable

log = structlog.stdlib.get_logger()


def failed_cycle(cause: Exception) -> CycleFailedError:
    report = CycleReport(
        table_name="MyTable",
        start_time=datetime.now(),
        final_state=CycleState.FAILED,
        failed_stage=CycleState.FETCH_CHANGES,
    )
    return CycleFailedError(report, cause)


@given(
    st.integers(min_value=1, max_value=6),
    st.floats(min_value=0.01, max_value=5.0),
    st.floats(min_value=1.0, max_value=60.0),
)
@settings(max_examples=50)
def test_property_28_exponential_backoff_behavior(
    num_failures: int, base_delay: float, max_delay: float
):
    """Property 28: Exponential backoff behavior.

    For any sequence of retryable failures, each delay doubles the previous
    one until it reaches the cap.
    """
    log.info(
        "test_property_28_exponential_backoff_behavior",
        num_failures=num_failures,
        base_delay=base_delay,
    )

    delays: list[float] = []
    call_count = 0

    @exponential_backoff_retry(
        max_retries=num_failures,
        base_delay=base_delay,
        max_delay=max_delay,
        exceptions=(TransientSourceError,),
        sleep=delays.append,
    )
    def failing_function():
        nonlocal call_count
        call_count += 1
        if call_count <= num_failures:
            raise TransientSourceError(f"Simulated failure {call_count}")
        return "success"

    assert failing_function() == "success"
    assert call_count == num_failures + 1
    assert delays == [min(base_delay * (2**i), max_delay) for i in range(num_failures)]
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert all(delay <= max_delay for delay in delays)


@given(st.integers(min_value=0, max_value=10))
@settings(max_examples=20)
def test_exponential_backoff_max_retries(max_retries: int):
    """The retry loop gives up after max_retries retries."""
    call_count = 0

    @exponential_backoff_retry(
        max_retries=max_retries,
        exceptions=(CycleTimeoutError,),
        sleep=lambda _: None,
    )
    def always_failing_function():
        nonlocal call_count
        call_count += 1
        raise CycleTimeoutError("Always times out")

    try:
        always_failing_function()
        assert False, "Function should have raised CycleTimeoutError"
    except CycleTimeoutError:
        pass

    assert call_count == max_retries + 1


def test_non_retryable_errors_are_raised_immediately():
    sleeps = []
    call_count = 0
    cause = HistoryExpiredError("MyTable", 0, 10)

    @exponential_backoff_retry(
        max_retries=5,
        exceptions=(CycleFailedError,),
        retry_if=is_retryable,
        sleep=sleeps.append,
    )
    def expired():
        nonlocal call_count
        call_count += 1
        raise failed_cycle(cause)

    try:
        expired()
        assert False, "Function should have raised CycleFailedError"
    except CycleFailedError as e:
        assert e.cause is cause

    assert call_count == 1
    assert sleeps == []


def test_retryable_cycle_failure_recovers():
    sleeps = []
    outcomes = [failed_cycle(TransientSourceError("deadlock")), CycleInProgressError("busy")]

    @exponential_backoff_retry(
        max_retries=3,
        base_delay=0.5,
        exceptions=(CycleFailedError, CycleInProgressError),
        retry_if=is_retryable,
        sleep=sleeps.append,
    )
    def flaky():
        if outcomes:
            raise outcomes.pop(0)
        return "done"

    assert flaky() == "done"
    assert sleeps == [0.5, 1.0]


def test_retryable_flags():
    assert is_retryable(TransientSourceError("x"))
    assert is_retryable(CycleTimeoutError("x"))
    assert is_retryable(CycleInProgressError("x"))
    assert not is_retryable(HistoryExpiredError("MyTable", 0, 1))
    assert not is_retryable(SchemaMismatchError("ReportingMyTable", (1,), "bad"))
    assert not is_retryable(ValueError("x"))
    assert is_retryable(failed_cycle(TransientSourceError("x")))
    assert not is_retryable(failed_cycle(SchemaMismatchError("ReportingMyTable", (1,), "bad")))


@given(st.integers(min_value=0, max_value=40), st.floats(min_value=0.0, max_value=10.0))
def test_backoff_delay_is_capped(attempt: int, base_delay: float):
    assert backoff_delay(attempt, base_delay, 30.0) <= 30.0
