import asyncio
import datetime

import pytest

from sanctionkeeper.datatypes.discord_datatypes import GuildID, UserID
from sanctionkeeper.datatypes.sanction_datatypes import (
    EffectOutcome,
    ReversalOutcome,
    ReversalRequest,
    SanctionKind,
    SanctionRequest,
)
from sanctionkeeper.errors import (
    EffectFailed,
    MalformedDuration,
    SanctionConflict,
    SanctionError,
    SanctionNotFound,
    StoreUnavailable,
)
from sanctionkeeper.scheduler.consistency_engine import ConsistencyEngine
from sanctionkeeper.scheduler.identifier_generator import ActionIdGenerator
from sanctionkeeper.scheduler.timer_registry import TimerRegistry

GUILD = GuildID(1000)
MODERATOR = UserID(2000)
MUTE_ROLE = "3000"


def mute_request(duration: str | None = "10m", user: int = 42) -> SanctionRequest:
    return SanctionRequest(
        guild_id=GUILD,
        user_id=UserID(user),
        moderator_id=MODERATOR,
        kind=SanctionKind.MUTE,
        reason="spam",
        duration=duration,
        metadata={"role_id": MUTE_ROLE},
    )


def unmute_request(user: int = 42) -> ReversalRequest:
    return ReversalRequest(
        guild_id=GUILD,
        user_id=UserID(user),
        kind=SanctionKind.MUTE,
        reason="appeal accepted",
        executor_id=MODERATOR,
    )


# ----------------------------------------------------------------------
# Issue
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_issue_persists_applies_and_arms_timer(engine, repo, effects, timers, clock) -> None:
    record = await engine.issue(mute_request("10m"))

    stored = await repo.find_one(action_id=record.action_id)
    assert stored.active is True
    assert stored.expires_at - clock() == datetime.timedelta(milliseconds=600_000)
    assert len(record.action_id) == 18
    assert effects.forward == [record.action_id]
    assert timers.is_armed(record.action_id)


@pytest.mark.asyncio
async def test_permanent_sanction_is_never_scheduled(engine, repo, timers) -> None:
    record = await engine.issue(mute_request("forever"))

    assert record.expires_at is None
    assert (await repo.find_one(action_id=record.action_id)).active is True
    assert len(timers) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("duration", ["whenever", "10000y"])
async def test_malformed_duration_is_rejected_before_persisting(engine, repo, effects, duration) -> None:
    with pytest.raises(MalformedDuration):
        await engine.issue(mute_request(duration))

    assert await repo.find_all_active(list(SanctionKind)) == []
    assert effects.forward == []


@pytest.mark.asyncio
async def test_second_active_mute_conflicts(engine) -> None:
    first = await engine.issue(mute_request())

    with pytest.raises(SanctionConflict) as exc_info:
        await engine.issue(mute_request())

    assert exc_info.value.action_id == first.action_id


@pytest.mark.asyncio
async def test_issue_requires_a_role(engine) -> None:
    request = mute_request()
    request.metadata = {}

    with pytest.raises(SanctionError):
        await engine.issue(request)


@pytest.mark.asyncio
async def test_failed_forward_effect_is_compensated(engine, repo, effects, timers) -> None:
    effects.forward_outcome = EffectOutcome.FAILED

    with pytest.raises(EffectFailed) as exc_info:
        await engine.issue(mute_request())

    record = exc_info.value.record
    assert exc_info.value.compensated is True
    stored = await repo.find_one(action_id=record.action_id)
    assert stored.active is False
    assert stored.metadata["forward_effect"] == "failed"
    assert await repo.find_one(user_id=UserID(42), kind=SanctionKind.MUTE, active=True) is None
    assert len(timers) == 0


@pytest.mark.asyncio
async def test_raising_forward_effect_is_compensated(engine, repo, effects) -> None:
    effects.forward_error = RuntimeError("discord down")

    with pytest.raises(EffectFailed) as exc_info:
        await engine.issue(mute_request())

    assert isinstance(exc_info.value.cause, RuntimeError)
    assert (await repo.find_one(action_id=exc_info.value.record.action_id)).active is False


@pytest.mark.asyncio
async def test_store_failure_means_no_forward_effect(engine, connection, effects) -> None:
    await connection.close()

    with pytest.raises(StoreUnavailable):
        await engine.issue(mute_request())

    assert effects.forward == []


# ----------------------------------------------------------------------
# Reverse
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_reversals_apply_effect_once(engine, repo, effects, make_record) -> None:
    record = make_record()
    await repo.create(record)
    effects.reversal_delay = 0.01

    outcomes = await asyncio.gather(*(engine.reverse(record.action_id) for _ in range(10)))

    assert outcomes.count(ReversalOutcome.REVERSED) == 1
    assert outcomes.count(ReversalOutcome.ALREADY_INACTIVE) == 9
    assert effects.reversal == [record.action_id]


@pytest.mark.asyncio
async def test_reverse_on_inactive_record_is_a_no_op(engine, repo, effects, make_record) -> None:
    record = make_record(active=False)
    await repo.create(record)

    assert await engine.reverse(record) is ReversalOutcome.ALREADY_INACTIVE
    assert await engine.reverse("unknown") is ReversalOutcome.ALREADY_INACTIVE
    assert effects.reversal == []


@pytest.mark.asyncio
async def test_member_absent_counts_as_reversed(engine, repo, effects, make_record) -> None:
    record = make_record()
    await repo.create(record)
    effects.reversal_outcome = EffectOutcome.MEMBER_ABSENT

    assert await engine.reverse(record) is ReversalOutcome.REVERSED
    assert (await repo.find_one(action_id=record.action_id)).active is False


@pytest.mark.asyncio
@pytest.mark.parametrize("fail_by_raising", [False, True])
async def test_failed_reversal_keeps_record_inactive(engine, repo, effects, make_record, fail_by_raising) -> None:
    record = make_record()
    await repo.create(record)
    if fail_by_raising:
        effects.reversal_error = RuntimeError("rate limited")
    else:
        effects.reversal_outcome = EffectOutcome.FAILED

    assert await engine.reverse(record) is ReversalOutcome.EFFECT_FAILED

    stored = await repo.find_one(action_id=record.action_id)
    assert stored.active is False
    assert stored.metadata["reversal_effect"] == "failed"
    assert await engine.reverse(record) is ReversalOutcome.ALREADY_INACTIVE


@pytest.mark.asyncio
async def test_reverse_disarms_timer(engine, repo, timers, make_record) -> None:
    record = make_record()
    await repo.create(record)
    await timers.schedule(record)

    await engine.reverse(record)

    assert not timers.is_armed(record.action_id)


# ----------------------------------------------------------------------
# Manual reversal
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_revoke_disarms_timer_and_reverses(engine, repo, effects, timers) -> None:
    issued = await engine.issue(mute_request())

    record, outcome = await engine.revoke(unmute_request())

    assert outcome is ReversalOutcome.REVERSED
    assert record.action_id == issued.action_id
    assert not timers.is_armed(issued.action_id)
    assert effects.reversal == [issued.action_id]
    stored = await repo.find_one(action_id=issued.action_id)
    assert stored.active is False
    assert stored.metadata["revoked_by"] == str(MODERATOR)


@pytest.mark.asyncio
async def test_revoke_without_timer_after_restart(engine, repo, effects, make_record) -> None:
    record = make_record()
    await repo.create(record)

    _, outcome = await engine.revoke(unmute_request())

    assert outcome is ReversalOutcome.REVERSED
    assert effects.reversal == [record.action_id]


@pytest.mark.asyncio
async def test_revoke_without_active_sanction(engine) -> None:
    with pytest.raises(SanctionNotFound):
        await engine.revoke(unmute_request())


@pytest.mark.asyncio
async def test_manual_revoke_racing_timer_fire_applies_once(engine, effects, timers) -> None:
    issued = await engine.issue(mute_request())
    effects.reversal_delay = 0.01

    results = await asyncio.gather(
        engine.revoke(unmute_request()),
        timers.fire_now(issued.action_id),
        return_exceptions=True,
    )

    assert effects.reversal == [issued.action_id]
    assert not any(isinstance(result, Exception) and not isinstance(result, SanctionNotFound) for result in results)


@pytest.mark.asyncio
async def test_revoke_while_forward_effect_in_flight_leaves_no_effect(engine, repo, effects, timers) -> None:
    effects.forward_gate = asyncio.Event()
    issuing = asyncio.create_task(engine.issue(mute_request("10m")))
    while await repo.find_one(user_id=UserID(42), kind=SanctionKind.MUTE, active=True) is None:
        await asyncio.sleep(0.005)

    _, outcome = await engine.revoke(unmute_request())
    effects.forward_gate.set()
    record = await issuing

    assert outcome is ReversalOutcome.REVERSED
    assert effects.order == ["reversal", "forward", "reversal"]
    assert record.active is False
    assert (await repo.find_one(action_id=record.action_id)).active is False
    assert not timers.is_armed(record.action_id)


# ----------------------------------------------------------------------
# Reinstate
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reinstate_reapplies_forward_effect(engine, repo, effects, make_record) -> None:
    record = make_record()
    await repo.create(record)

    outcome = await engine.reinstate(record)

    assert outcome is EffectOutcome.APPLIED
    assert effects.forward == [record.action_id]
    assert effects.reversal == []
    assert (await repo.find_one(action_id=record.action_id)).active is True


@pytest.mark.asyncio
async def test_reinstate_undoes_effect_if_sanction_ended_meanwhile(engine, repo, effects, make_record) -> None:
    record = make_record()
    await repo.create(record)
    await repo.conditional_deactivate(record.action_id)

    outcome = await engine.reinstate(record)

    assert outcome is None
    assert effects.order == ["forward", "reversal"]


# ----------------------------------------------------------------------
# End to end
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ten_minute_mute_ends_when_timer_fires(engine, repo, effects, timers, clock) -> None:
    t0 = clock()
    record = await engine.issue(mute_request("10m"))
    assert record.expires_at == t0 + datetime.timedelta(milliseconds=600_000)

    clock.advance(minutes=10)
    outcome = await timers.fire_now(record.action_id)

    assert outcome is ReversalOutcome.REVERSED
    assert effects.reversal == [record.action_id]
    assert await repo.find_one(user_id=UserID(42), kind=SanctionKind.MUTE, active=True) is None


@pytest.mark.asyncio
async def test_short_mute_is_reversed_by_real_timer(repo, effects) -> None:
    timers = TimerRegistry()
    engine = ConsistencyEngine(repo, effects, timers, ActionIdGenerator(repo))

    record = await engine.issue(mute_request("100ms"))
    await asyncio.sleep(0.4)

    assert effects.reversal == [record.action_id]
    assert (await repo.find_one(action_id=record.action_id)).active is False
    assert len(timers) == 0
    await timers.shutdown()
