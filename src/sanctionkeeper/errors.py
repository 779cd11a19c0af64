"""
Error taxonomy for the sanction scheduler.

Command handlers catch :class:`SanctionError` to turn a failure into a reply;
background paths (timers, recovery, sweep) log these per record and carry on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sanctionkeeper.datatypes.sanction_datatypes import SanctionRecord


class SanctionError(Exception):
    """Base class for every error raised by the sanction core."""


class MalformedDuration(SanctionError):
    """A duration string could not be parsed. Raised before anything is persisted."""

    def __init__(self, raw: str | None) -> None:
        self.raw = raw
        super().__init__(
            f"Invalid duration {raw!r}. Use formats like 30s, 10m, 1h, 1d or 'forever' for permanent."
        )


class GenerationExhausted(SanctionError):
    """Every candidate action id collided or the store failed for the whole retry budget."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Could not generate a unique action id after {attempts} attempts")


class StoreUnavailable(SanctionError):
    """The sanction store failed to complete an operation."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Sanction store unavailable during {operation}{detail}")


class DuplicateActionId(SanctionError):
    """The store rejected a record because its action id is already taken."""

    def __init__(self, action_id: str) -> None:
        self.action_id = action_id
        super().__init__(f"Action id {action_id} already exists")


class SanctionConflict(SanctionError):
    """The user already has an active sanction of the requested kind."""

    def __init__(self, user_id: str, kind: str, action_id: str | None = None) -> None:
        self.user_id = user_id
        self.kind = kind
        self.action_id = action_id
        suffix = f" (active action id: {action_id})" if action_id else ""
        super().__init__(f"User {user_id} already has an active {kind}{suffix}")


class SanctionNotFound(SanctionError):
    """No sanction matched a manual reversal or edit request."""


class EffectFailed(SanctionError):
    """
    A forward or reversal effect could not be applied to a present member.

    ``compensated`` tells whether the just-created record was flipped back to
    inactive after a failed forward effect.
    """

    def __init__(self, record: "SanctionRecord", stage: str, *, compensated: bool = False,
                 cause: BaseException | None = None) -> None:
        self.record = record
        self.stage = stage
        self.compensated = compensated
        self.cause = cause
        super().__init__(f"Failed to apply {stage} effect for sanction {record.action_id}")
