import httpx
import pytest

from ib_bridge.utils.retries import async_retry


async def test_retries_transient_errors_with_backoff():
    sleeps = []
    attempts = []

    async def sleep(seconds):
        sleeps.append(seconds)

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise httpx.ConnectError("down")
        return "ok"

    result = await async_retry(flaky, retries=2, base_delay=0.5, exceptions=(httpx.RequestError,), sleep=sleep)

    assert result == "ok"
    assert sleeps == [0.5, 1.0]


async def test_gives_up_after_budget():
    async def sleep(seconds):
        pass

    async def down():
        raise httpx.ConnectError("down")

    with pytest.raises(httpx.ConnectError):
        await async_retry(down, retries=1, base_delay=0.1, exceptions=(httpx.RequestError,), sleep=sleep)


async def test_other_errors_are_not_retried():
    calls = []

    async def broken():
        calls.append(1)
        raise ValueError("bad")

    with pytest.raises(ValueError):
        await async_retry(broken, retries=3, base_delay=0.1, exceptions=(httpx.RequestError,))
    assert len(calls) == 1
