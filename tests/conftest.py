"""
Pytest configuration and fixtures for Sanctionkeeper tests.
"""

import asyncio
import datetime
import sys
from pathlib import Path

# Add src directory to path so imports work
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

import pytest
import pytest_asyncio

from sanctionkeeper.database.db_connection import ConnectionManager
from sanctionkeeper.database.db_schema import SchemaManager
from sanctionkeeper.datatypes.discord_datatypes import GuildID, UserID
from sanctionkeeper.datatypes.sanction_datatypes import (
    EffectOutcome,
    SanctionKind,
    SanctionRecord,
)
from sanctionkeeper.repositories.sanction_repo import SanctionRepo
from sanctionkeeper.scheduler.consistency_engine import ConsistencyEngine
from sanctionkeeper.scheduler.identifier_generator import ActionIdGenerator
from sanctionkeeper.scheduler.timer_registry import TimerRegistry

T0 = datetime.datetime(2024, 1, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)
GUILD = GuildID(1000)
MODERATOR = UserID(2000)
MUTE_ROLE = "3000"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: datetime.datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += datetime.timedelta(**kwargs)


class RecordingEffects:
    """Effect applier that records calls and returns configurable outcomes."""

    def __init__(self) -> None:
        self.forward: list[str] = []
        self.reversal: list[str] = []
        self.order: list[str] = []
        self.forward_outcome = EffectOutcome.APPLIED
        self.reversal_outcome = EffectOutcome.APPLIED
        self.forward_error: Exception | None = None
        self.reversal_error: Exception | None = None
        self.forward_gate: asyncio.Event | None = None
        self.reversal_delay = 0.0

    async def apply_forward(self, record: SanctionRecord) -> EffectOutcome:
        if self.forward_gate is not None:
            await self.forward_gate.wait()
        self.forward.append(record.action_id)
        self.order.append("forward")
        if self.forward_error is not None:
            raise self.forward_error
        return self.forward_outcome

    async def apply_reversal(self, record: SanctionRecord) -> EffectOutcome:
        if self.reversal_delay:
            await asyncio.sleep(self.reversal_delay)
        self.reversal.append(record.action_id)
        self.order.append("reversal")
        if self.reversal_error is not None:
            raise self.reversal_error
        return self.reversal_outcome


@pytest_asyncio.fixture
async def connection(tmp_path: Path):
    manager = ConnectionManager()
    await manager.open(tmp_path / "sanctions.db")
    await SchemaManager.initialize_schema(manager.connection)
    yield manager
    await manager.close()


@pytest.fixture
def repo(connection: ConnectionManager) -> SanctionRepo:
    return SanctionRepo(connection)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def effects() -> RecordingEffects:
    return RecordingEffects()


@pytest_asyncio.fixture
async def timers(clock: FakeClock):
    registry = TimerRegistry(clock=clock, grace_seconds=1.0)
    yield registry
    await registry.shutdown()


@pytest.fixture
def engine(repo: SanctionRepo, effects: RecordingEffects, timers: TimerRegistry, clock: FakeClock) -> ConsistencyEngine:
    return ConsistencyEngine(repo, effects, timers, ActionIdGenerator(repo), clock)


@pytest.fixture
def make_record(clock: FakeClock):
    """Factory for records relative to the fake clock. ``expires_in`` is in seconds; None means permanent."""
    counter = iter(range(100000000000000000, 200000000000000000))

    def factory(
        *,
        user: int = 42,
        kind: SanctionKind = SanctionKind.MUTE,
        expires_in: float | None = 600,
        active: bool = True,
        action_id: str | None = None,
    ) -> SanctionRecord:
        issued_at = clock()
        return SanctionRecord(
            action_id=action_id or str(next(counter)),
            guild_id=GUILD,
            user_id=UserID(user),
            moderator_id=MODERATOR,
            kind=kind,
            reason="testing",
            duration=None if expires_in is None else f"{int(expires_in * 1000)}ms",
            issued_at=issued_at,
            expires_at=None if expires_in is None else issued_at + datetime.timedelta(seconds=expires_in),
            active=active,
            metadata={"role_id": MUTE_ROLE},
        )

    return factory
