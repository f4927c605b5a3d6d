"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
State changes produce new instances through the transition helpers.
"""

from dataclasses import dataclass, fields, replace
from datetime import UTC, date, datetime
from uuid import UUID, uuid4

from faucet.exceptions import InvalidTransitionError
from faucet.models.enums import Channel, MintStatus, Role


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def normalize_handle(handle: str) -> str:
    """Handles are compared case-insensitively."""
    return handle.strip().lower()


@dataclass(frozen=True)
class Identity:
    """Externally asserted identity, resolved by a front end."""

    channel: Channel
    handle: str
    domain: str | None = None

    def __post_init__(self) -> None:
        """Validate identity fields."""
        if not self.handle.strip():
            raise ValueError("handle cannot be empty")


@dataclass(frozen=True)
class User:
    """A user known to the faucet, keyed by (channel, handle)."""

    id: UUID
    channel: Channel
    handle: str
    role: Role
    domain: str | None
    last_seen_at: datetime

    def __post_init__(self) -> None:
        """Validate user fields."""
        if not self.handle.strip():
            raise ValueError("handle cannot be empty")

    @property
    def key(self) -> tuple[str, str]:
        """Identity key used for uniqueness."""
        return (self.channel.value, normalize_handle(self.handle))


@dataclass(frozen=True)
class MintRequest:
    """
    A single mint request and its position in the state machine.

    Invariants:
    - amount > 0, attempt >= 0
    - tx_reference is set iff status is completed
    - error is set iff status is failed
    - terminal requests always carry processed_at; pending ones never do
    """

    id: UUID
    user_id: UUID
    channel: Channel
    amount: int
    status: MintStatus
    requested_at: datetime
    tx_reference: str | None = None
    error: str | None = None
    processed_at: datetime | None = None
    attempt: int = 0

    def __post_init__(self) -> None:
        """Validate state machine invariants."""
        if self.amount <= 0:
            raise ValueError(f"Mint amount must be positive: {self.amount}")
        if self.attempt < 0:
            raise ValueError(f"Attempt cannot be negative: {self.attempt}")
        if (self.tx_reference is not None) != (self.status == MintStatus.COMPLETED):
            raise ValueError(f"tx_reference must be set iff completed (status={self.status.value})")
        if (self.error is not None) != (self.status == MintStatus.FAILED):
            raise ValueError(f"error must be set iff failed (status={self.status.value})")
        if self.status.is_terminal and self.processed_at is None:
            raise ValueError(f"processed_at is required for {self.status.value} requests")
        if self.status == MintStatus.PENDING and self.processed_at is not None:
            raise ValueError("pending requests cannot carry processed_at")

    @classmethod
    def new(cls, user_id: UUID, channel: Channel, amount: int) -> "MintRequest":
        """Create a fresh pending request."""
        return cls(
            id=uuid4(),
            user_id=user_id,
            channel=channel,
            amount=amount,
            status=MintStatus.PENDING,
            requested_at=utc_now(),
        )

    @property
    def day(self) -> date:
        """Calendar day (UTC) the request is accounted against."""
        return self.requested_at.astimezone(UTC).date()

    def start_processing(self, now: datetime | None = None) -> "MintRequest":
        """Pending (or reclaimed processing) -> processing, one more attempt."""
        if self.status.is_terminal:
            raise InvalidTransitionError(self.id, self.status, MintStatus.PROCESSING)
        return replace(
            self,
            status=MintStatus.PROCESSING,
            processed_at=now or utc_now(),
            attempt=self.attempt + 1,
        )

    def hold_inline(self) -> "MintRequest":
        """
        Pending -> processing for a caller that finishes the request itself.

        processed_at stays unset so claim_next_pending never treats the row
        as reclaimable.
        """
        if self.status != MintStatus.PENDING:
            raise InvalidTransitionError(self.id, self.status, MintStatus.PROCESSING)
        return replace(self, status=MintStatus.PROCESSING, attempt=self.attempt + 1)

    def complete(self, tx_reference: str, now: datetime | None = None) -> "MintRequest":
        """Record a successful transfer."""
        if self.status.is_terminal:
            raise InvalidTransitionError(self.id, self.status, MintStatus.COMPLETED)
        return replace(
            self,
            status=MintStatus.COMPLETED,
            tx_reference=tx_reference,
            error=None,
            processed_at=now or utc_now(),
        )

    def fail(self, reason: str, now: datetime | None = None) -> "MintRequest":
        """Record a failed transfer."""
        if self.status.is_terminal:
            raise InvalidTransitionError(self.id, self.status, MintStatus.FAILED)
        return replace(
            self,
            status=MintStatus.FAILED,
            tx_reference=None,
            error=reason or "unknown error",
            processed_at=now or utc_now(),
        )


@dataclass(frozen=True)
class MintOutcome:
    """Terminal result of a mint request, written in one atomic update."""

    request: MintRequest

    def __post_init__(self) -> None:
        """Only terminal requests have outcomes."""
        if not self.request.status.is_terminal:
            raise ValueError(f"Outcome requires a terminal request, got {self.request.status.value}")

    @property
    def status(self) -> MintStatus:
        return self.request.status

    @property
    def tx_reference(self) -> str | None:
        return self.request.tx_reference


@dataclass(frozen=True)
class Quota:
    """Per-user, per-day accumulation."""

    user_id: UUID
    day: date
    minted_total: int
    success_count: int


@dataclass(frozen=True)
class MintFailure:
    """Append-only failure log entry."""

    request_id: UUID
    failed_at: datetime
    reason: str


@dataclass(frozen=True)
class SystemConfigEntry:
    """Runtime override stored in the config store."""

    key: str
    value: str
    description: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class DailyReportRow:
    """Per-channel aggregate for one calendar day."""

    channel: str
    total_amount: int
    success_count: int
    failure_count: int


@dataclass(frozen=True)
class QuotaSnapshot:
    """Today's usage for a user as seen by the durable quota ledger."""

    minted_today: int
    cap: int | None

    @property
    def remaining(self) -> int | None:
        """Remaining amount today; None when the role is uncapped."""
        if self.cap is None:
            return None
        return max(0, self.cap - self.minted_today)


@dataclass(frozen=True)
class LimitConfigUpdate:
    """Optional overrides for the configured limits; None leaves a field unchanged."""

    default_amount: int | None = None
    default_daily_cap: int | None = None
    privileged_amount: int | None = None
    privileged_daily_cap: int | None = None
    admin_amount: int | None = None
    admin_daily_cap: int | None = None

    def __post_init__(self) -> None:
        """Overrides must be positive."""
        for field in fields(self):
            value = getattr(self, field.name)
            if value is not None and value <= 0:
                raise ValueError(f"{field.name} must be positive, got {value}")

    def items(self) -> list[tuple[str, int]]:
        """Set fields as (name, value) pairs."""
        return [
            (field.name, getattr(self, field.name))
            for field in fields(self)
            if getattr(self, field.name) is not None
        ]

    @property
    def is_empty(self) -> bool:
        return not self.items()
