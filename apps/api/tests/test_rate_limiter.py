from unittest.mock import AsyncMock, MagicMock

import pytest

from services.rate_limiter import KEY_PREFIX, RateLimiter, limit_for


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_memory_window_allows_up_to_limit_then_rejects():
    clock = FakeClock(7200.0)
    limiter = RateLimiter(backend="memory", window_seconds=60, clock=clock)

    decisions = [await limiter.check("acct-1", limit=3) for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]
    assert decisions[-1].reset_at == 7260.0


@pytest.mark.asyncio
async def test_memory_window_resets_at_boundary_and_is_per_key():
    clock = FakeClock(7200.0)
    limiter = RateLimiter(backend="memory", window_seconds=60, clock=clock)
    await limiter.check("acct-1", limit=1)

    assert (await limiter.check("acct-1", limit=1)).allowed is False
    assert (await limiter.check("acct-2", limit=1)).allowed is True

    clock.now = 7260.0
    assert (await limiter.check("acct-1", limit=1)).allowed is True


@pytest.mark.asyncio
async def test_status_does_not_consume_and_reset_clears_window():
    limiter = RateLimiter(backend="memory", window_seconds=60, clock=FakeClock(100.0))
    await limiter.check("acct-1", limit=2)

    status = await limiter.status("acct-1", limit=2)
    assert status.remaining == 1
    assert (await limiter.status("acct-1", limit=2)).remaining == 1

    await limiter.reset("acct-1")
    assert (await limiter.status("acct-1", limit=2)).remaining == 2


def _redis_with_pipeline(count=None, error=None):
    pipe = MagicMock()
    if error is not None:
        pipe.execute = AsyncMock(side_effect=error)
    else:
        pipe.execute = AsyncMock(return_value=[count, True])
    client = MagicMock()
    client.pipeline.return_value = pipe
    return client, pipe


@pytest.mark.asyncio
async def test_redis_backend_counts_in_a_transactional_pipeline():
    client, pipe = _redis_with_pipeline(count=5)
    limiter = RateLimiter(backend="redis", redis_client=client, window_seconds=3600, clock=FakeClock(3600.0))

    decision = await limiter.check("acct-9", limit=5)

    assert decision.allowed is True
    assert decision.remaining == 0
    client.pipeline.assert_called_once_with(transaction=True)
    pipe.incr.assert_called_once_with(f"{KEY_PREFIX}:generate:acct-9:3600")
    pipe.expire.assert_called_once_with(f"{KEY_PREFIX}:generate:acct-9:3600", 3600)


@pytest.mark.asyncio
async def test_unreachable_store_fails_closed_by_default():
    client, _ = _redis_with_pipeline(error=ConnectionError("redis down"))
    limiter = RateLimiter(backend="redis", redis_client=client, fail_open=False)

    decision = await limiter.check("acct-1", limit=10)

    assert decision.allowed is False
    assert decision.degraded is True


@pytest.mark.asyncio
async def test_unreachable_store_can_be_configured_to_fail_open():
    client, _ = _redis_with_pipeline(error=ConnectionError("redis down"))
    limiter = RateLimiter(backend="redis", redis_client=client, fail_open=True)

    decision = await limiter.check("acct-1", limit=10)

    assert decision.allowed is True
    assert decision.degraded is True


def test_paid_accounts_get_the_higher_ceiling():
    assert limit_for(False) == 20
    assert limit_for(True) == 100


@pytest.mark.asyncio
async def test_status_reports_degraded_instead_of_raising_when_store_is_down():
    client = MagicMock()
    client.get = AsyncMock(side_effect=ConnectionError("redis down"))
    closed = RateLimiter(backend="redis", redis_client=client, fail_open=False)
    open_ = RateLimiter(backend="redis", redis_client=client, fail_open=True)

    closed_status = await closed.status("acct-1", limit=10)
    open_status = await open_.status("acct-1", limit=10)

    assert (closed_status.allowed, closed_status.remaining, closed_status.degraded) == (False, 0, True)
    assert (open_status.allowed, open_status.remaining, open_status.degraded) == (True, 10, True)
