import pytest

from rollouts.errors import RoutingError, TransientPlatformError
from rollouts.utils.decorators import backoff_delays, call_with_retry, retry


def test_backoff_delays_grow_between_attempts():
    assert list(backoff_delays(4, 0.5, 2.0)) == [0.5, 1.0, 2.0]
    assert list(backoff_delays(1, 0.5, 2.0)) == []


def test_retry_succeeds_after_transient_failures():
    calls = []

    @retry(max_attempts=3, delay=0, exceptions=(TransientPlatformError,))
    def provision():
        calls.append(1)
        if len(calls) < 3:
            raise TransientPlatformError("throttled")
        return ["t0"]

    assert provision() == ["t0"]
    assert len(calls) == 3


def test_retry_reraises_last_error_and_ignores_other_exceptions():
    calls = []

    @retry(max_attempts=2, delay=0, exceptions=(TransientPlatformError,))
    def terminate(kind):
        calls.append(kind)
        raise kind("boom")

    with pytest.raises(TransientPlatformError):
        terminate(TransientPlatformError)
    assert len(calls) == 2

    with pytest.raises(ValueError):
        terminate(ValueError)
    assert len(calls) == 3


async def test_call_with_retry_gives_up_after_budget():
    calls = []

    async def update_weights():
        calls.append(1)
        raise RoutingError("rejected")

    with pytest.raises(RoutingError):
        await call_with_retry(update_weights, max_attempts=3, delay=0, exceptions=(RoutingError,))
    assert len(calls) == 3
