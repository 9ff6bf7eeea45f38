import pytest

from cliprelay.retry import (
    FAILURE_NETWORK,
    FAILURE_REJECTED,
    FAILURE_SERVER,
    FAILURE_TIMEOUT,
    FAILURE_UNAUTHORIZED,
    RetryPolicy,
    classify_status,
    next_attempt,
)

POLICY = RetryPolicy(retries=3, backoff_base_sec=0.3, chunk_bytes=32768, min_chunk_bytes=8192)


@pytest.mark.parametrize("attempt, delay", [(0, 0.3), (1, 0.6), (2, 1.2)])
def test_backoff_doubles_per_attempt(attempt, delay):
    decision = next_attempt(attempt, FAILURE_SERVER, 32768, POLICY)

    assert decision.retry
    assert decision.delay == pytest.approx(delay)
    assert decision.chunk_size == 32768


def test_retry_budget_is_exhausted_after_configured_retries():
    assert not next_attempt(3, FAILURE_SERVER, 32768, POLICY).retry


@pytest.mark.parametrize("failure", [FAILURE_REJECTED, FAILURE_UNAUTHORIZED])
def test_permanent_failures_never_retry(failure):
    decision = next_attempt(0, failure, 32768, POLICY)

    assert not decision.retry
    assert decision.chunk_size == 32768


def test_timeouts_halve_chunk_down_to_floor():
    sizes = []
    size = 32768
    for attempt in range(3):
        size = next_attempt(attempt, FAILURE_TIMEOUT, size, POLICY).chunk_size
        sizes.append(size)

    assert sizes == [16384, 8192, 8192]
    assert next_attempt(0, FAILURE_NETWORK, 12000, POLICY).chunk_size == 8192


def test_server_errors_keep_chunk_size():
    assert next_attempt(0, FAILURE_SERVER, 16384, POLICY).chunk_size == 16384


@pytest.mark.parametrize(
    "status, failure",
    [
        (200, None),
        (204, None),
        (308, FAILURE_REJECTED),
        (400, FAILURE_REJECTED),
        (401, FAILURE_UNAUTHORIZED),
        (404, FAILURE_REJECTED),
        (413, FAILURE_REJECTED),
        (408, FAILURE_SERVER),
        (429, FAILURE_SERVER),
        (500, FAILURE_SERVER),
        (503, FAILURE_SERVER),
    ],
)
def test_classify_status(status, failure):
    assert classify_status(status) == failure
