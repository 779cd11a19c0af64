"""
Type-safe wrapper classes for Discord identifiers.

Snowflakes are 64-bit integers but are persisted as strings, so every wrapper
stores the canonical decimal string and converts to ``int`` only for API calls.
"""

from __future__ import annotations

from typing import Any, Union


class Snowflake:
    """
    Base wrapper for a Discord snowflake ID.

    Attributes:
        _value (str): The snowflake stored as a canonical decimal string.

    Example:
        >>> uid = UserID(123456789012345678)
        >>> uid.to_int()
        123456789012345678
        >>> str(UserID(" 42 "))
        '42'
    """

    __slots__ = ("_value",)

    def __init__(self, value: Union[str, int, "Snowflake"]) -> None:
        """
        Args:
            value: The snowflake as a string, int, or another wrapper.

        Raises:
            ValueError: If the value is not a non-negative integer.
        """
        if isinstance(value, Snowflake):
            self._value = value._value
            return
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ValueError(f"Cannot create {type(self).__name__} from {type(value).__name__}: {value}")

        number = int(value.strip()) if isinstance(value, str) else value
        if number < 0:
            raise ValueError(f"{type(self).__name__} must be non-negative, got {value}")
        self._value = str(number)

    @classmethod
    def from_object(cls, obj: Any) -> "Snowflake":
        """Build the wrapper from any Discord model exposing an ``id`` attribute."""
        return cls(obj.id)

    def to_int(self) -> int:
        """Return the snowflake as an integer for Discord API calls."""
        return int(self._value)

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._value!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Snowflake):
            return type(self) is type(other) and self._value == other._value
        if isinstance(other, str):
            return self._value == other.strip()
        if isinstance(other, int) and not isinstance(other, bool):
            return self._value == str(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)


class UserID(Snowflake):
    """Snowflake of a user account (sanction target or issuing moderator)."""

    __slots__ = ()


class GuildID(Snowflake):
    """Snowflake of the guild a sanction was issued in."""

    __slots__ = ()


class RoleID(Snowflake):
    """Snowflake of a role applied or removed by a sanction."""

    __slots__ = ()
