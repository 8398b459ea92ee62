import pytest

from ib_bridge.services.job_poller import job_status, poll_until_terminal
from conftest import FakeClock, FakeSleep


def _sequence(*values):
    calls = []
    remaining = list(values)

    async def check():
        calls.append(1)
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return check, calls


async def test_stops_at_first_terminal_state():
    clock = FakeClock()
    sleep = FakeSleep(clock)
    check, calls = _sequence({"status": "pending"}, {"status": "pending"}, {"status": "completed"})

    result = await poll_until_terminal(check, max_wait=60, interval=5, sleep=sleep, clock=clock)

    assert len(calls) == 3
    assert result.checks == 3
    assert result.state == "completed"
    assert not result.timed_out
    assert sleep.calls == [5, 5]


@pytest.mark.parametrize("state", ["error", "failed"])
async def test_failure_states_are_terminal_not_timeouts(state):
    clock = FakeClock()
    check, calls = _sequence({"status": "pending"}, {"status": state})
    result = await poll_until_terminal(check, max_wait=60, interval=5, sleep=FakeSleep(clock), clock=clock)
    assert result.state == state
    assert not result.timed_out
    assert len(calls) == 2


async def test_times_out_without_raising():
    clock = FakeClock()
    sleep = FakeSleep(clock)
    check, calls = _sequence({"status": "pending"})

    result = await poll_until_terminal(check, max_wait=12, interval=5, sleep=sleep, clock=clock)

    assert result.timed_out
    assert result.state == "pending"
    assert result.elapsed == pytest.approx(12)
    # 0, 5, 10, then a final check at the 12s deadline
    assert len(calls) == 4
    assert sleep.calls == [5, 5, 2]


async def test_zero_max_wait_is_a_single_check():
    clock = FakeClock()
    sleep = FakeSleep(clock)
    check, calls = _sequence(None)

    result = await poll_until_terminal(
        check, max_wait=0, interval=2, is_terminal=lambda v: v is not None, sleep=sleep, clock=clock
    )

    assert len(calls) == 1
    assert result.timed_out
    assert result.value is None
    assert sleep.calls == []


async def test_check_errors_propagate():
    async def check():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await poll_until_terminal(check, max_wait=10, interval=1, sleep=FakeSleep(FakeClock()))


def test_job_status_accepts_strings_dicts_and_objects():
    class Job:
        status = "failed"

    assert job_status("pending") == "pending"
    assert job_status({"status": "completed"}) == "completed"
    assert job_status(Job()) == "failed"
    assert job_status(None) is None
