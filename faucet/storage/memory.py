"""
Memory Store - in-process backend for tests, local runs and --no-db reports.

A single asyncio.Lock guards every mutation, which gives the same atomicity
the durable backends get from row locks and find-and-modify.
"""

import asyncio
from dataclasses import replace
from datetime import UTC, date, datetime, time, timedelta
from uuid import UUID

from structlog import get_logger

from faucet.exceptions import InvalidTransitionError
from faucet.models.domain import (
    DailyReportRow,
    MintFailure,
    MintOutcome,
    MintRequest,
    Quota,
    SystemConfigEntry,
    User,
    normalize_handle,
    utc_now,
)
from faucet.models.enums import MintStatus, Role
from faucet.storage.interfaces import FaucetStore

logger = get_logger(__name__)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """[day 00:00, day+1 00:00) in UTC."""
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


class MemoryStore(FaucetStore):
    """All capabilities over plain dicts. State is lost when the process exits."""

    backend_name = "memory"

    def __init__(self, visibility_timeout: timedelta = timedelta(minutes=5)) -> None:
        self.visibility_timeout = visibility_timeout
        self._lock = asyncio.Lock()
        self._users: dict[tuple[str, str], User] = {}
        self._requests: dict[UUID, MintRequest] = {}
        self._quotas: dict[tuple[UUID, date], Quota] = {}
        self._failures: list[MintFailure] = []
        self._configs: dict[str, SystemConfigEntry] = {}

    @staticmethod
    def _key(channel: str, handle: str) -> tuple[str, str]:
        return (channel.strip().lower(), normalize_handle(handle))

    # ========================================================================
    # Identity
    # ========================================================================

    async def upsert_user(self, user: User) -> User:
        key = self._key(user.channel.value, user.handle)
        user = replace(user, handle=key[1])
        async with self._lock:
            existing = self._users.get(key)
            if existing is not None and existing.id != user.id:
                # The first id assigned to an identity is permanent
                user = replace(user, id=existing.id)
            self._users[key] = user
        return user

    async def find_user(self, channel: str, handle: str) -> User | None:
        async with self._lock:
            return self._users.get(self._key(channel, handle))

    async def set_role(self, user_id: UUID, role: Role) -> None:
        async with self._lock:
            for key, user in self._users.items():
                if user.id == user_id:
                    self._users[key] = replace(user, role=role)
                    return
        logger.warning("set_role_user_missing", backend=self.backend_name, user_id=str(user_id))

    # ========================================================================
    # Mint ledger
    # ========================================================================

    async def enqueue(self, request: MintRequest) -> None:
        async with self._lock:
            if request.id in self._requests:
                return
            self._requests[request.id] = request

    async def insert_processing(self, request: MintRequest) -> None:
        if request.status != MintStatus.PROCESSING or request.processed_at is not None:
            raise ValueError("insert_processing takes a held request without processed_at")
        async with self._lock:
            current = self._requests.get(request.id)
            if current is not None:
                raise InvalidTransitionError(request.id, current.status, MintStatus.PROCESSING)
            self._requests[request.id] = request

    async def claim_next_pending(self) -> MintRequest | None:
        now = utc_now()
        cutoff = now - self.visibility_timeout
        async with self._lock:
            eligible = [
                request
                for request in self._requests.values()
                if request.status == MintStatus.PENDING
                or (
                    request.status == MintStatus.PROCESSING
                    and request.processed_at is not None
                    and request.processed_at < cutoff
                )
            ]
            if not eligible:
                return None

            oldest = min(eligible, key=lambda request: request.requested_at)
            claimed = oldest.start_processing(now)
            self._requests[claimed.id] = claimed

        if oldest.status == MintStatus.PROCESSING:
            logger.warning(
                "mint_request_reclaimed",
                backend=self.backend_name,
                request_id=str(claimed.id),
                attempt=claimed.attempt,
            )
        return claimed

    async def update_status(self, request_id: UUID, status: MintStatus) -> None:
        if status.is_terminal:
            raise ValueError("Terminal states are written with record_outcome")
        async with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status != MintStatus.PENDING or status != MintStatus.PROCESSING:
                raise InvalidTransitionError(
                    request_id, current.status if current else None, status
                )
            self._requests[request_id] = replace(
                current, status=status, attempt=current.attempt + 1
            )

    async def record_outcome(self, outcome: MintOutcome) -> None:
        request = outcome.request
        async with self._lock:
            current = self._requests.get(request.id)
            if current is None or (
                current.status.is_terminal and current.status != request.status
            ):
                raise InvalidTransitionError(
                    request.id, current.status if current else None, request.status
                )
            self._requests[request.id] = replace(
                current,
                status=request.status,
                tx_reference=request.tx_reference,
                error=request.error,
                processed_at=request.processed_at,
                attempt=request.attempt,
            )

    async def find_request(self, request_id: UUID) -> MintRequest | None:
        async with self._lock:
            return self._requests.get(request_id)

    # ========================================================================
    # Quota ledger
    # ========================================================================

    async def record_mint(self, user_id: UUID, day: date, amount: int) -> None:
        async with self._lock:
            quota = self._quotas.get((user_id, day))
            if quota is None:
                quota = Quota(user_id=user_id, day=day, minted_total=amount, success_count=0)
            else:
                quota = replace(quota, minted_total=quota.minted_total + amount)
            self._quotas[(user_id, day)] = quota

    async def record_success(self, user_id: UUID, day: date) -> None:
        async with self._lock:
            quota = self._quotas.get((user_id, day))
            if quota is None:
                quota = Quota(user_id=user_id, day=day, minted_total=0, success_count=1)
            else:
                quota = replace(quota, success_count=quota.success_count + 1)
            self._quotas[(user_id, day)] = quota

    async def fetch_quota(self, user_id: UUID, day: date) -> Quota | None:
        async with self._lock:
            return self._quotas.get((user_id, day))

    # ========================================================================
    # Reporting
    # ========================================================================

    async def daily_summary(self, day: date) -> list[DailyReportRow]:
        start, end = day_bounds(day)
        totals: dict[str, list[int]] = {}
        async with self._lock:
            for request in self._requests.values():
                if not start <= request.requested_at < end:
                    continue
                entry = totals.setdefault(request.channel.value, [0, 0, 0])
                entry[0] += request.amount
                if request.status == MintStatus.COMPLETED:
                    entry[1] += 1
                elif request.status == MintStatus.FAILED:
                    entry[2] += 1

        return [
            DailyReportRow(
                channel=channel,
                total_amount=total,
                success_count=success,
                failure_count=failure,
            )
            for channel, (total, success, failure) in sorted(totals.items())
        ]

    async def log_failure(self, request_id: UUID, when: datetime, reason: str) -> None:
        async with self._lock:
            self._failures.append(MintFailure(request_id=request_id, failed_at=when, reason=reason))

    async def list_failures(self, request_id: UUID | None = None) -> list[MintFailure]:
        async with self._lock:
            return [
                failure
                for failure in self._failures
                if request_id is None or failure.request_id == request_id
            ]

    # ========================================================================
    # System config
    # ========================================================================

    async def get_config(self, key: str) -> SystemConfigEntry | None:
        async with self._lock:
            return self._configs.get(key)

    async def set_config(self, key: str, value: str, description: str | None = None) -> None:
        now = utc_now()
        async with self._lock:
            existing = self._configs.get(key)
            self._configs[key] = SystemConfigEntry(
                key=key,
                value=value,
                description=description if description is not None else (
                    existing.description if existing else None
                ),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )

    async def list_configs(self) -> list[SystemConfigEntry]:
        async with self._lock:
            return sorted(self._configs.values(), key=lambda entry: entry.key)
