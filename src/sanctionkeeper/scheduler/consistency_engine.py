"""
Write ordering shared by every path that creates or ends a sanction.

Reversal
--------
Timer fire, sweep and manual ``/unmute`` all funnel into :meth:`ConsistencyEngine.reverse`.
The conditional ``active = 1 -> 0`` update in the store is the only
serialisation point: whichever caller flips the flag owns the reversal
effect, every other caller sees ``ALREADY_INACTIVE`` and does nothing.

The flag flip is final. If the reversal effect then fails for a member who is
still present, the record stays inactive and the failure is logged and noted
in the record's metadata for an operator to act on.

Issue
-----
Persist first, then apply the forward effect. If the effect fails the record
is flipped back to inactive so no active record is left without its effect.
If persisting fails nothing is applied. If the record was ended while the
forward effect was in flight, the effect is undone and no timer is armed.
"""

from __future__ import annotations

import asyncio
import datetime
from dataclasses import replace
from typing import Callable, Tuple, Union

from sanctionkeeper.datatypes.sanction_datatypes import (
    EffectOutcome,
    ReversalOutcome,
    ReversalRequest,
    SanctionRecord,
    SanctionRequest,
    utc_now,
)
from sanctionkeeper.effects.base import EffectApplier
from sanctionkeeper.errors import (
    EffectFailed,
    SanctionConflict,
    SanctionError,
    SanctionNotFound,
    StoreUnavailable,
)
from sanctionkeeper.repositories.sanction_repo import SanctionRepo
from sanctionkeeper.scheduler.identifier_generator import ActionIdGenerator
from sanctionkeeper.scheduler.timer_registry import TimerRegistry
from sanctionkeeper.util.duration import compute_expiry, parse_duration
from sanctionkeeper.util.logger import get_logger

logger = get_logger("consistency_engine")


class ConsistencyEngine:
    """
    Issues sanctions and drives every reversal through one conditional path.

    Binds itself as the expiry callback of ``timers`` on construction.
    """

    def __init__(
        self,
        repo: SanctionRepo,
        effects: EffectApplier,
        timers: TimerRegistry,
        id_generator: ActionIdGenerator,
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self._repo = repo
        self._effects = effects
        self._timers = timers
        self._id_generator = id_generator
        self._clock = clock
        timers.bind(self.reverse)

    # ------------------------------------------------------------------
    # Reversal
    # ------------------------------------------------------------------

    async def reverse(self, target: Union[str, SanctionRecord]) -> ReversalOutcome:
        """
        End a sanction if it is still active.

        Args:
            target: Action id or record. A record is only used for its id; the
                current stored state decides the outcome.

        Returns:
            ReversalOutcome: ``REVERSED`` if this call flipped the flag and the
            effect succeeded (or the member is gone), ``ALREADY_INACTIVE`` if
            another path got there first, ``EFFECT_FAILED`` if the flag flipped
            but the platform rejected the reversal.

        Raises:
            StoreUnavailable: The conditional update itself failed; nothing changed.
        """
        action_id = target.action_id if isinstance(target, SanctionRecord) else str(target)

        try:
            record = await self._repo.conditional_deactivate(action_id)
        finally:
            self._timers.cancel(action_id)

        if record is None:
            logger.debug("[CONSISTENCY] %s already inactive; nothing to do", action_id)
            return ReversalOutcome.ALREADY_INACTIVE

        outcome = await self._apply_reversal(record)

        if outcome is EffectOutcome.FAILED:
            logger.error(
                "[CONSISTENCY] Reversal effect failed for %s (%s, user %s); record stays inactive",
                action_id, record.kind, record.user_id,
            )
            await self._annotate(action_id, {"reversal_effect": "failed"})
            return ReversalOutcome.EFFECT_FAILED

        if outcome is EffectOutcome.MEMBER_ABSENT:
            logger.info("[CONSISTENCY] %s reversed; user %s is no longer in the guild", action_id, record.user_id)
        else:
            logger.info("[CONSISTENCY] Reversed %s %s for user %s", record.kind, action_id, record.user_id)
        return ReversalOutcome.REVERSED

    async def _apply_reversal(self, record: SanctionRecord) -> EffectOutcome:
        try:
            return await self._effects.apply_reversal(record)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[CONSISTENCY] Effect applier raised while reversing %s", record.action_id)
            return EffectOutcome.FAILED

    async def revoke(self, request: ReversalRequest) -> Tuple[SanctionRecord, ReversalOutcome]:
        """
        Manually end the user's active sanction of ``request.kind`` before it expires.

        Raises:
            SanctionNotFound: The user has no active sanction of that kind.
            StoreUnavailable: The store could not be read or updated.
        """
        record = await self._repo.find_one(
            guild_id=request.guild_id,
            user_id=request.user_id,
            kind=request.kind,
            active=True,
        )
        if record is None:
            raise SanctionNotFound(f"User {request.user_id} has no active {request.kind}")

        self._timers.cancel(record.action_id)
        outcome = await self.reverse(record)
        if outcome is not ReversalOutcome.ALREADY_INACTIVE:
            await self._annotate(
                record.action_id,
                {"revoked_by": str(request.executor_id), "revoke_reason": request.reason},
            )
        logger.info(
            "[CONSISTENCY] %s revoked %s %s early (%s): %s",
            request.executor_id, record.kind, record.action_id, request.reason, outcome,
        )
        return record.deactivated(), outcome

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    async def issue(self, request: SanctionRequest) -> SanctionRecord:
        """
        Create a sanction, apply its forward effect and arm its expiry timer.

        Returns:
            SanctionRecord: The new record. It is already inactive if the
            sanction was revoked while its forward effect was in flight.

        Raises:
            MalformedDuration: ``request.duration`` is not a valid duration.
            SanctionConflict: The user already has an active sanction of this kind.
            GenerationExhausted: No unique action id could be drawn.
            StoreUnavailable: The record could not be persisted; nothing was applied.
            EffectFailed: The forward effect failed; ``compensated`` says whether
                the record was flipped back to inactive.
        """
        parse_duration(request.duration)
        if request.metadata.get("role_id") is None:
            raise SanctionError(f"A {request.kind} sanction needs a role_id")

        existing = await self._repo.find_one(
            guild_id=request.guild_id,
            user_id=request.user_id,
            kind=request.kind,
            active=True,
        )
        if existing is not None:
            raise SanctionConflict(str(request.user_id), request.kind.value, existing.action_id)

        issued_at = self._clock()
        template = SanctionRecord(
            action_id="",
            guild_id=request.guild_id,
            user_id=request.user_id,
            moderator_id=request.moderator_id,
            kind=request.kind,
            reason=request.reason,
            duration=None if request.duration is None else request.duration.strip(),
            issued_at=issued_at,
            expires_at=compute_expiry(issued_at, request.duration),
            active=True,
            metadata=dict(request.metadata),
        )

        record = await self._id_generator.create_with_unique_id(
            lambda action_id: self._repo.create(replace(template, action_id=action_id))
        )
        logger.info(
            "[CONSISTENCY] Persisted %s %s for user %s (expires_at=%s)",
            record.kind, record.action_id, record.user_id, record.expires_at,
        )

        outcome, cause = await self._apply_forward(record)
        if outcome is not EffectOutcome.APPLIED:
            compensated = await self._compensate(record)
            raise EffectFailed(record, "forward", compensated=compensated, cause=cause)

        ended = await self._ended_during_forward(record)
        if ended is not None:
            return ended

        if not record.is_permanent:
            await self._timers.schedule(record)
        return record

    async def reinstate(self, record: SanctionRecord) -> EffectOutcome | None:
        """
        Apply the forward effect of an active sanction again, e.g. after the
        member left and rejoined the guild. The record itself is not changed.

        Returns the forward outcome, or None when the sanction ended while the
        effect was in flight and the effect has been undone.
        """
        outcome, _ = await self._apply_forward(record)
        if outcome is EffectOutcome.APPLIED and await self._ended_during_forward(record) is not None:
            return None
        if outcome is EffectOutcome.FAILED:
            logger.warning("[CONSISTENCY] Could not reinstate %s for user %s", record.action_id, record.user_id)
        return outcome

    async def _ended_during_forward(self, record: SanctionRecord) -> SanctionRecord | None:
        """
        Undo a forward effect that landed after another path ended the sanction.

        Returns the stored (inactive) record when the effect had to be undone,
        otherwise None.
        """
        try:
            current = await self._repo.find_one(action_id=record.action_id)
        except StoreUnavailable as exc:
            logger.warning("[CONSISTENCY] Could not re-read %s after its forward effect: %s", record.action_id, exc)
            return None
        if current is None or current.active:
            return None

        logger.warning(
            "[CONSISTENCY] %s ended while its forward effect was in flight; undoing the effect",
            record.action_id,
        )
        if await self._apply_reversal(current) is EffectOutcome.FAILED:
            await self._annotate(record.action_id, {"reversal_effect": "failed"})
        return current

    async def _apply_forward(self, record: SanctionRecord) -> Tuple[EffectOutcome, BaseException | None]:
        try:
            return await self._effects.apply_forward(record), None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("[CONSISTENCY] Effect applier raised while issuing %s", record.action_id)
            return EffectOutcome.FAILED, exc

    async def _compensate(self, record: SanctionRecord) -> bool:
        """Flip a just-created record to inactive after its forward effect failed."""
        try:
            flipped = await self._repo.conditional_deactivate(record.action_id)
        except StoreUnavailable:
            logger.critical(
                "[CONSISTENCY] Could not deactivate %s after its forward effect failed; "
                "the sweep will reverse it at expiry",
                record.action_id,
            )
            return False

        if flipped is not None:
            await self._annotate(record.action_id, {"forward_effect": "failed"})
        logger.warning("[CONSISTENCY] Forward effect failed for %s; record deactivated", record.action_id)
        return True

    async def _annotate(self, action_id: str, patch: dict) -> None:
        try:
            await self._repo.update_metadata(action_id, patch)
        except StoreUnavailable as exc:
            logger.warning("[CONSISTENCY] Could not record %s on %s: %s", patch, action_id, exc)

