import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from sanctionkeeper.scheduler.timer_registry import ScheduleResult, TimerRegistry


@pytest.fixture
def on_expire() -> AsyncMock:
    return AsyncMock(return_value="done")


@pytest_asyncio.fixture
async def registry(clock, on_expire):
    timers = TimerRegistry(on_expire, clock=clock, grace_seconds=1.0)
    yield timers
    await timers.shutdown()


@pytest.mark.asyncio
async def test_schedule_arms_timer(registry, on_expire, make_record) -> None:
    record = make_record(expires_in=600)

    assert await registry.schedule(record) is ScheduleResult.ARMED
    assert registry.is_armed(record.action_id)
    assert registry.pending() == [record.action_id]
    assert len(registry) == 1
    on_expire.assert_not_awaited()


@pytest.mark.asyncio
async def test_expired_record_fires_inline(registry, on_expire, make_record) -> None:
    record = make_record(expires_in=-5)

    assert await registry.schedule(record) is ScheduleResult.FIRED_INLINE
    on_expire.assert_awaited_once_with(record)
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_permanent_and_inactive_records_are_skipped(registry, on_expire, make_record) -> None:
    assert await registry.schedule(make_record(expires_in=None)) is ScheduleResult.SKIPPED
    assert await registry.schedule(make_record(active=False)) is ScheduleResult.SKIPPED
    assert len(registry) == 0
    on_expire.assert_not_awaited()


@pytest.mark.asyncio
async def test_timer_fires_and_removes_itself(registry, on_expire, make_record) -> None:
    record = make_record(expires_in=0.05)

    await registry.schedule(record)
    await asyncio.sleep(0.2)

    on_expire.assert_awaited_once_with(record)
    assert not registry.is_armed(record.action_id)


@pytest.mark.asyncio
async def test_cancel_disarms_and_is_idempotent(registry, on_expire, make_record) -> None:
    record = make_record(expires_in=0.05)
    await registry.schedule(record)

    assert registry.cancel(record.action_id) is True
    assert registry.cancel(record.action_id) is False
    assert registry.cancel("never-armed") is False

    await asyncio.sleep(0.15)
    on_expire.assert_not_awaited()


@pytest.mark.asyncio
async def test_rescheduling_replaces_existing_timer(registry, on_expire, make_record) -> None:
    record = make_record(expires_in=0.05)
    await registry.schedule(record)
    await registry.schedule(record)

    await asyncio.sleep(0.2)

    on_expire.assert_awaited_once()


@pytest.mark.asyncio
async def test_fire_now_runs_callback_immediately(registry, on_expire, make_record) -> None:
    record = make_record(expires_in=600)
    await registry.schedule(record)

    assert await registry.fire_now(record.action_id) == "done"
    on_expire.assert_awaited_once_with(record)
    assert not registry.is_armed(record.action_id)
    assert await registry.fire_now(record.action_id) is None


@pytest.mark.asyncio
async def test_timer_that_wakes_early_by_wall_clock_rearms(clock, on_expire, make_record) -> None:
    registry = TimerRegistry(on_expire, clock=clock, grace_seconds=0.01)
    record = make_record(expires_in=0.05)
    await registry.schedule(record)

    # The fake wall clock has not moved, so waking after 0.05s is "early".
    await asyncio.sleep(0.15)
    on_expire.assert_not_awaited()
    assert registry.is_armed(record.action_id)

    clock.advance(seconds=1)
    await asyncio.sleep(0.1)
    on_expire.assert_awaited_once_with(record)
    await registry.shutdown()


@pytest.mark.asyncio
async def test_callback_errors_are_contained(clock, make_record) -> None:
    failing = AsyncMock(side_effect=RuntimeError("boom"))
    registry = TimerRegistry(failing, clock=clock)
    record = make_record(expires_in=0.02)

    await registry.schedule(record)
    await asyncio.sleep(0.1)

    failing.assert_awaited_once()
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_cancel_from_inside_firing_timer_does_not_cancel_itself(clock, make_record) -> None:
    record = make_record(expires_in=0.02)
    finished = asyncio.Event()
    registry = TimerRegistry(clock=clock)

    async def on_expire(fired) -> None:
        registry.cancel(fired.action_id)
        await asyncio.sleep(0)
        finished.set()

    registry.bind(on_expire)
    await registry.schedule(record)

    await asyncio.wait_for(finished.wait(), timeout=1)


@pytest.mark.asyncio
async def test_unbound_registry_refuses_to_schedule(clock, make_record) -> None:
    registry = TimerRegistry(clock=clock)
    with pytest.raises(RuntimeError):
        await registry.schedule(make_record())


@pytest.mark.asyncio
async def test_shutdown_disarms_everything(registry, make_record) -> None:
    for user in range(3):
        await registry.schedule(make_record(user=user))

    await registry.shutdown()

    assert len(registry) == 0
