from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from sanctionkeeper.cogs import scheduler_cog
from sanctionkeeper.datatypes.sanction_datatypes import RecoveryReport, RejoinReport
from sanctionkeeper.errors import StoreUnavailable


def make_service(started: bool = False) -> SimpleNamespace:
    return SimpleNamespace(
        started=started,
        start=AsyncMock(return_value=RecoveryReport(scheduled=2, reversed=1)),
        shutdown=AsyncMock(),
        restore_member=AsyncMock(return_value=RejoinReport(reinstated=["1"])),
    )


def test_setup_registers_cog():
    captured = {}
    fake_bot = SimpleNamespace(add_cog=lambda cog: captured.setdefault("cog", cog))

    scheduler_cog.setup(fake_bot, make_service())

    assert isinstance(captured["cog"], scheduler_cog.SanctionSchedulerCog)


@pytest.mark.asyncio
async def test_first_ready_starts_service():
    service = make_service()
    cog = scheduler_cog.SanctionSchedulerCog(SimpleNamespace(), service)

    await cog.on_ready()

    service.start.assert_awaited_once()


@pytest.mark.asyncio
async def test_reconnect_does_not_restart_service():
    service = make_service(started=True)
    cog = scheduler_cog.SanctionSchedulerCog(SimpleNamespace(), service)

    await cog.on_ready()

    service.start.assert_not_awaited()


def test_unload_schedules_shutdown():
    service = make_service()
    loop = MagicMock()
    loop.create_task.side_effect = lambda coro: coro.close()
    cog = scheduler_cog.SanctionSchedulerCog(SimpleNamespace(loop=loop), service)

    cog.cog_unload()

    loop.create_task.assert_called_once()


@pytest.mark.asyncio
async def test_member_join_restores_sanctions():
    service = make_service(started=True)
    cog = scheduler_cog.SanctionSchedulerCog(SimpleNamespace(), service)
    member = SimpleNamespace(id=42, guild=SimpleNamespace(id=1000))

    await cog.on_member_join(member)

    service.restore_member.assert_awaited_once()
    guild_id, user_id = service.restore_member.await_args.args
    assert (guild_id.to_int(), user_id.to_int()) == (1000, 42)


@pytest.mark.asyncio
async def test_member_join_survives_unavailable_store():
    service = make_service(started=True)
    service.restore_member.side_effect = StoreUnavailable("restore", RuntimeError("db closed"))
    cog = scheduler_cog.SanctionSchedulerCog(SimpleNamespace(), service)

    await cog.on_member_join(SimpleNamespace(id=42, guild=SimpleNamespace(id=1000)))
