"""
Collision-free sanction identifiers.

An action id is a random 18-digit decimal string (about 9 x 10^17 values).
Each candidate is probed against the store and redrawn on collision. The
probe is check-then-use; the primary key on ``sanctions.action_id`` is what
finally rejects a duplicate, and :meth:`ActionIdGenerator.create_with_unique_id`
redraws when that happens.
"""

from __future__ import annotations

import secrets
from typing import Awaitable, Callable, Optional, TypeVar

from sanctionkeeper.errors import DuplicateActionId, GenerationExhausted, StoreUnavailable
from sanctionkeeper.repositories.sanction_repo import SanctionRepo
from sanctionkeeper.util.logger import get_logger

logger = get_logger("identifier_generator")

ID_DIGITS = 18
_LOWEST_ID = 10 ** (ID_DIGITS - 1)
_ID_SPAN = 9 * _LOWEST_ID

T = TypeVar("T")


def draw_candidate() -> str:
    """Draw one uniformly random 18-digit id with no leading zero."""
    return str(_LOWEST_ID + secrets.randbelow(_ID_SPAN))


class ActionIdGenerator:
    """
    Produces action ids that are unused in the sanction store.

    Args:
        repo: Store probed for existing ids.
        max_attempts: Retry budget shared by collisions and store errors.
        draw: Candidate source; injectable for tests.
    """

    def __init__(
        self,
        repo: SanctionRepo,
        max_attempts: int = 10,
        draw: Optional[Callable[[], str]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._repo = repo
        self._max_attempts = max_attempts
        self._draw = draw or draw_candidate

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def generate(self) -> str:
        """
        Return an id no stored record uses.

        Raises:
            GenerationExhausted: Every attempt collided or hit a store error.
        """
        for attempt in range(1, self._max_attempts + 1):
            candidate = self._draw()
            try:
                taken = await self._repo.exists(candidate)
            except StoreUnavailable as exc:
                logger.warning("[ID GENERATOR] Probe %d/%d failed: %s", attempt, self._max_attempts, exc)
                continue
            if not taken:
                return candidate
            logger.warning("[ID GENERATOR] Collision on %s (attempt %d/%d)", candidate, attempt, self._max_attempts)

        logger.error("[ID GENERATOR] Gave up after %d attempts", self._max_attempts)
        raise GenerationExhausted(self._max_attempts)

    async def create_with_unique_id(self, build: Callable[[str], Awaitable[T]]) -> T:
        """
        Generate an id and hand it to ``build``; redraw if ``build`` hits a duplicate.

        ``build`` is expected to persist the record and raise
        :class:`DuplicateActionId` if another writer claimed the id between
        the probe and the insert.
        """
        for _ in range(self._max_attempts):
            action_id = await self.generate()
            try:
                return await build(action_id)
            except DuplicateActionId:
                logger.warning("[ID GENERATOR] %s was claimed before insert; redrawing", action_id)
        raise GenerationExhausted(self._max_attempts)
