"""
Storage Interfaces - capability-oriented persistence contracts.

Each capability can be implemented independently. Every backend (memory,
PostgreSQL, MongoDB) must expose identical external behavior:

- every operation is atomic at the storage layer
- connectivity loss surfaces as StorageUnavailableError
- claim_next_pending never hands the same request to two callers
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from uuid import UUID

from faucet.models.domain import (
    DailyReportRow,
    MintFailure,
    MintOutcome,
    MintRequest,
    Quota,
    SystemConfigEntry,
    User,
)
from faucet.models.enums import MintStatus, Role


class IdentityStore(ABC):
    @abstractmethod
    async def upsert_user(self, user: User) -> User:
        """
        Insert or update by (channel, handle) and return the stored user.

        The stored id never changes, so a caller that lost an insert race
        gets the winner's id back rather than the one it generated.
        """

    @abstractmethod
    async def find_user(self, channel: str, handle: str) -> User | None:
        """Case-insensitive lookup by (channel, handle)."""

    @abstractmethod
    async def set_role(self, user_id: UUID, role: Role) -> None: ...


class MintLedger(ABC):
    @abstractmethod
    async def enqueue(self, request: MintRequest) -> None:
        """Persist a pending request. Idempotent by request id."""

    @abstractmethod
    async def insert_processing(self, request: MintRequest) -> None:
        """
        Persist a new request already held by its caller, in one write.

        The row is stored as processing with processed_at unset, so it is
        never visible to claim_next_pending. An existing id raises
        InvalidTransitionError; a request not produced by hold_inline raises
        ValueError.
        """

    @abstractmethod
    async def claim_next_pending(self) -> MintRequest | None:
        """
        Atomically claim the oldest eligible request.

        Eligible: pending, or processing with processed_at older than the
        store's visibility timeout. The claimed row becomes processing with
        processed_at = now and attempt + 1.
        """

    @abstractmethod
    async def update_status(self, request_id: UUID, status: MintStatus) -> None:
        """
        Move a pending request to processing and count the attempt.

        Only pending -> processing is accepted (InvalidTransitionError
        otherwise). Terminal states are written through record_outcome so
        tx_reference/error travel with the status.
        """

    @abstractmethod
    async def record_outcome(self, outcome: MintOutcome) -> None:
        """Write status, tx_reference, error, processed_at and attempt in one update."""

    @abstractmethod
    async def find_request(self, request_id: UUID) -> MintRequest | None: ...


class QuotaLedger(ABC):
    @abstractmethod
    async def record_mint(self, user_id: UUID, day: date, amount: int) -> None:
        """Atomic increment of minted_total; creates the row on first use."""

    @abstractmethod
    async def record_success(self, user_id: UUID, day: date) -> None:
        """Atomic increment of success_count; creates the row on first use."""

    @abstractmethod
    async def fetch_quota(self, user_id: UUID, day: date) -> Quota | None: ...


class ReportingStore(ABC):
    @abstractmethod
    async def daily_summary(self, day: date) -> list[DailyReportRow]:
        """Per-channel totals for requests made within [day 00:00, day+1 00:00) UTC."""

    @abstractmethod
    async def log_failure(self, request_id: UUID, when: datetime, reason: str) -> None: ...

    @abstractmethod
    async def list_failures(self, request_id: UUID | None = None) -> list[MintFailure]: ...


class ConfigStore(ABC):
    @abstractmethod
    async def get_config(self, key: str) -> SystemConfigEntry | None: ...

    @abstractmethod
    async def set_config(self, key: str, value: str, description: str | None = None) -> None:
        """Last write wins per key."""

    @abstractmethod
    async def list_configs(self) -> list[SystemConfigEntry]: ...


class FaucetStore(IdentityStore, MintLedger, QuotaLedger, ReportingStore, ConfigStore):
    """A backend implementing every capability."""

    backend_name: str = "unknown"

    async def close(self) -> None:
        """Release connections held by the backend."""
