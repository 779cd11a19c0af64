"""
In-process timers that fire the reversal of each active, expiring sanction.

The registry is volatile: it only holds timers armed during this process
lifetime. Recovery rebuilds it from the store after a restart, and the
reconciliation sweep catches anything it misses.

All mutations of ``_timers`` happen synchronously between awaits on the
event loop thread, so no lock is needed.
"""

from __future__ import annotations

import asyncio
import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sanctionkeeper.datatypes.sanction_datatypes import SanctionRecord, utc_now
from sanctionkeeper.util.logger import get_logger

logger = get_logger("timer_registry")

ExpireCallback = Callable[[SanctionRecord], Awaitable[Any]]


class ScheduleResult(Enum):
    """What :meth:`TimerRegistry.schedule` did with a record."""

    ARMED = "armed"
    FIRED_INLINE = "fired_inline"
    SKIPPED = "skipped"


@dataclass(slots=True)
class _PendingTimer:
    record: SanctionRecord
    task: asyncio.Task


class TimerRegistry:
    """
    Map from action id to a pending one-shot timer.

    Args:
        on_expire: Coroutine run with the record when its timer fires. Usually
            bound later by the consistency engine through :meth:`bind`.
        clock: Wall clock returning aware UTC datetimes.
        grace_seconds: A timer that wakes earlier than ``expires_at`` by more
            than this (host clock moved) goes back to sleep instead of firing.
    """

    def __init__(
        self,
        on_expire: Optional[ExpireCallback] = None,
        *,
        clock: Callable[[], datetime.datetime] = utc_now,
        grace_seconds: float = 1.0,
    ) -> None:
        self._timers: Dict[str, _PendingTimer] = {}
        self._on_expire = on_expire
        self._clock = clock
        self._grace_seconds = grace_seconds

    def bind(self, on_expire: ExpireCallback) -> None:
        """Set the coroutine run when a timer fires."""
        self._on_expire = on_expire

    def _expire_callback(self) -> ExpireCallback:
        if self._on_expire is None:
            raise RuntimeError("TimerRegistry has no expiry callback; call bind() first")
        return self._on_expire

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule(self, record: SanctionRecord) -> ScheduleResult:
        """
        Arm a timer for ``record``, or fire it inline if it has already expired.

        Permanent and inactive records are skipped. Scheduling an id that
        already has a timer replaces the old one.
        """
        if not record.active or record.expires_at is None:
            return ScheduleResult.SKIPPED

        on_expire = self._expire_callback()
        remaining = (record.expires_at - self._clock()).total_seconds()
        if remaining <= 0:
            logger.info("[TIMER REGISTRY] %s already expired %.1fs ago; reversing now", record.action_id, -remaining)
            self.cancel(record.action_id)
            await on_expire(record)
            return ScheduleResult.FIRED_INLINE

        self.cancel(record.action_id)
        task = asyncio.get_running_loop().create_task(
            self._run(record), name=f"sanction-timer-{record.action_id}"
        )
        self._timers[record.action_id] = _PendingTimer(record=record, task=task)
        logger.debug("[TIMER REGISTRY] Armed %s to fire in %.1fs", record.action_id, remaining)
        return ScheduleResult.ARMED

    def cancel(self, action_id: str) -> bool:
        """
        Disarm the timer for ``action_id`` if one exists.

        Returns False when there is nothing to cancel (already fired, never
        armed in this process). Never cancels the task it is called from.
        """
        pending = self._timers.pop(action_id, None)
        if pending is None:
            return False
        if pending.task is not asyncio.current_task() and not pending.task.done():
            pending.task.cancel()
        logger.debug("[TIMER REGISTRY] Disarmed %s", action_id)
        return True

    async def fire_now(self, action_id: str) -> Any:
        """
        Disarm the timer for ``action_id`` and run its expiry callback immediately.

        Returns the callback's result, or None if no timer was armed.
        """
        pending = self._timers.get(action_id)
        if pending is None:
            return None
        self.cancel(action_id)
        return await self._expire_callback()(pending.record)

    async def shutdown(self) -> None:
        """Disarm every timer and wait for the tasks to finish cancelling."""
        tasks = [pending.task for pending in self._timers.values()]
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("[TIMER REGISTRY] Shut down (%d timers disarmed)", len(tasks))

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def is_armed(self, action_id: str) -> bool:
        return action_id in self._timers

    def pending(self) -> List[str]:
        """Action ids with a live timer."""
        return list(self._timers)

    def __len__(self) -> int:
        return len(self._timers)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._timers

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _seconds_left(self, record: SanctionRecord) -> float:
        assert record.expires_at is not None
        return (record.expires_at - self._clock()).total_seconds()

    async def _run(self, record: SanctionRecord) -> None:
        action_id = record.action_id
        delay = self._seconds_left(record)
        while delay > 0:
            await asyncio.sleep(delay)
            delay = self._seconds_left(record)
            if delay <= self._grace_seconds:
                break
            logger.warning(
                "[TIMER REGISTRY] %s woke %.1fs early by wall clock; re-arming", action_id, delay
            )

        # Leave the registry before reversing so a concurrent cancel() can
        # never interrupt a reversal that has already started.
        current = self._timers.get(action_id)
        if current is not None and current.task is asyncio.current_task():
            del self._timers[action_id]

        logger.info("[TIMER REGISTRY] Timer fired for %s", action_id)
        try:
            await self._expire_callback()(record)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[TIMER REGISTRY] Expiry handler failed for %s; the sweep will retry", action_id)
