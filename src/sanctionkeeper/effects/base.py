"""
Boundary between the scheduler core and the platform that carries out effects.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sanctionkeeper.datatypes.sanction_datatypes import EffectOutcome, SanctionRecord


@runtime_checkable
class EffectApplier(Protocol):
    """
    Applies the forward and reversal effect of a sanction.

    Implementations report ``MEMBER_ABSENT`` when the target has left the
    guild and ``FAILED`` for any other failure. They may also raise; the
    consistency engine treats an exception as ``FAILED``.
    """

    async def apply_forward(self, record: SanctionRecord) -> EffectOutcome:
        ...

    async def apply_reversal(self, record: SanctionRecord) -> EffectOutcome:
        ...
