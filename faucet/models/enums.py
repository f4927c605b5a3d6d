"""
Enumerations shared by the domain, storage and service layers.

Stored values are the lower-case enum values; parsing is case-insensitive.
"""

from enum import Enum


class Channel(str, Enum):
    """Front-end channel an identity was asserted on."""

    WEB = "web"
    TELEGRAM = "telegram"
    DISCORD = "discord"

    @classmethod
    def parse(cls, value: "str | Channel") -> "Channel":
        """Parse a channel name, ignoring case."""
        if isinstance(value, Channel):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown channel: {value}") from None


class Role(str, Enum):
    """User role - governs spend ceiling and daily cap."""

    USER = "user"
    PRIVILEGED = "privileged"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        """Parse a role name, ignoring case."""
        if isinstance(value, Role):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown role: {value}") from None


class MintStatus(str, Enum):
    """Mint request lifecycle: pending -> processing -> completed | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Completed and failed requests never transition again."""
        return self in (MintStatus.COMPLETED, MintStatus.FAILED)

    @classmethod
    def parse(cls, value: "str | MintStatus") -> "MintStatus":
        """Parse a status name, ignoring case."""
        if isinstance(value, MintStatus):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown mint status: {value}") from None
