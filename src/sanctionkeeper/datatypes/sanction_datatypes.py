"""
Sanction kinds, the persisted sanction record, and the value types exchanged
between the scheduler components.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from sanctionkeeper.datatypes.discord_datatypes import GuildID, RoleID, UserID


class SanctionKind(Enum):
    """Every kind of time-bounded sanction the scheduler manages."""

    MUTE = "mute"
    TIMED_ROLE_GRANT = "timed_role_grant"
    TIMED_ROLE_REVOKE = "timed_role_revoke"

    def __str__(self) -> str:
        return self.value


SCHEDULED_KINDS: tuple[SanctionKind, ...] = tuple(SanctionKind)


class ReversalOutcome(Enum):
    """Result of driving one sanction through the shared reversal path."""

    REVERSED = "reversed"
    ALREADY_INACTIVE = "already_inactive"
    EFFECT_FAILED = "effect_failed"

    def __str__(self) -> str:
        return self.value


class EffectOutcome(Enum):
    """Result reported by an effect applier for one forward or reversal effect."""

    APPLIED = "applied"
    MEMBER_ABSENT = "member_absent"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


def utc_now() -> datetime.datetime:
    """Timezone-aware current UTC time; the default clock of every component."""
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(slots=True)
class SanctionRecord:
    """
    One persisted sanction.

    ``active`` is the only field the scheduler ever changes after creation,
    and only from True to False. ``reason`` may be edited out-of-band.

    Attributes:
        action_id: Globally unique 18-digit identifier, shared by all kinds.
        guild_id: Guild the sanction applies in.
        user_id: Target account.
        moderator_id: Issuing account (may be the bot itself).
        kind: Which effect pair applies.
        reason: Free text.
        duration: Duration string as given, or None for permanent.
        issued_at: Creation time (UTC).
        expires_at: ``issued_at + duration``; None for permanent sanctions.
        active: True while the forward effect is presumed in force.
        metadata: Kind-specific payload needed to reverse the effect (e.g. ``role_id``).
    """

    action_id: str
    guild_id: GuildID
    user_id: UserID
    moderator_id: UserID
    kind: SanctionKind
    reason: str
    duration: Optional[str]
    issued_at: datetime.datetime
    expires_at: Optional[datetime.datetime]
    active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    @property
    def role_id(self) -> Optional[RoleID]:
        raw = self.metadata.get("role_id")
        return RoleID(raw) if raw is not None else None

    def remaining(self, now: datetime.datetime) -> Optional[datetime.timedelta]:
        """Time left until expiry at ``now``; None for permanent sanctions."""
        if self.expires_at is None:
            return None
        return self.expires_at - now

    def is_expired(self, now: datetime.datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def deactivated(self) -> "SanctionRecord":
        """Return a copy with ``active`` cleared."""
        return replace(self, active=False)


@dataclass(slots=True)
class SanctionRequest:
    """A creation request handed over by the command layer."""

    guild_id: GuildID
    user_id: UserID
    moderator_id: UserID
    kind: SanctionKind
    reason: str
    duration: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ReversalRequest:
    """A manual reversal request (e.g. ``/unmute``) handed over by the command layer."""

    guild_id: GuildID
    user_id: UserID
    kind: SanctionKind
    reason: str
    executor_id: UserID


@dataclass(slots=True)
class SanctionStatus:
    """
    Read-only diagnostic view of one sanction.

    Attributes:
        record: The stored record.
        expires_at: Expiry time, or None when permanent.
        remaining: Time left at the moment of the query, or None when permanent.
        expired_unprocessed: True when the record is still active but already past expiry.
        timer_armed: True when this process holds a live timer for the record.
    """

    record: SanctionRecord
    expires_at: Optional[datetime.datetime]
    remaining: Optional[datetime.timedelta]
    expired_unprocessed: bool
    timer_armed: bool


@dataclass(slots=True)
class RecoveryReport:
    """Counts from one startup recovery pass."""

    scheduled: int = 0
    reversed: int = 0
    skipped_permanent: int = 0
    failed: List[str] = field(default_factory=list)


@dataclass(slots=True)
class RejoinReport:
    """Action ids handled when a member with active sanctions rejoined."""

    reinstated: List[str] = field(default_factory=list)
    reversed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass(slots=True)
class SweepReport:
    """Counts from one reconciliation sweep."""

    scanned: int = 0
    reversed: int = 0
    already_inactive: int = 0
    effect_failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        """Expired sanctions this sweep closed out (with or without a working effect)."""
        return self.reversed + self.effect_failed
