"""
PostgreSQL Store - async SQLAlchemy backend over asyncpg.

Every operation runs in its own short transaction:
- upserts use INSERT ... ON CONFLICT
- quota increments are single-statement `minted_total = minted_total + EXCLUDED.minted_total`
- claims use SELECT ... FOR UPDATE SKIP LOCKED so concurrent workers never share a row
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from uuid import UUID

from sqlalchemy import Select, and_, case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from structlog import get_logger

from faucet.db.models import (
    MintFailureRow,
    MintRequestRow,
    QuotaRow,
    SystemConfigRow,
    UserRow,
)
from faucet.db.session import build_session_factory
from faucet.exceptions import InvalidTransitionError, StorageUnavailableError
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
from faucet.models.enums import Channel, MintStatus, Role
from faucet.observability.metrics import metrics
from faucet.storage.interfaces import FaucetStore
from faucet.storage.memory import day_bounds

logger = get_logger(__name__)

_CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, OSError)


def claim_candidate_statement(cutoff: datetime) -> Select[tuple[MintRequestRow]]:
    """Oldest claimable request, locked for this transaction and skipped by others."""
    return (
        select(MintRequestRow)
        .where(
            or_(
                MintRequestRow.status == MintStatus.PENDING.value,
                and_(
                    MintRequestRow.status == MintStatus.PROCESSING.value,
                    MintRequestRow.processed_at.is_not(None),
                    MintRequestRow.processed_at < cutoff,
                ),
            )
        )
        .order_by(MintRequestRow.requested_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )


def _user_from_row(row: UserRow) -> User:
    return User(
        id=row.id,
        channel=Channel.parse(row.channel),
        handle=row.handle,
        role=Role.parse(row.role),
        domain=row.domain,
        last_seen_at=row.last_seen_at,
    )


def _request_from_row(row: MintRequestRow) -> MintRequest:
    return MintRequest(
        id=row.id,
        user_id=row.user_id,
        channel=Channel.parse(row.channel),
        amount=row.amount,
        status=MintStatus.parse(row.status),
        requested_at=row.requested_at,
        tx_reference=row.tx_reference,
        error=row.error,
        processed_at=row.processed_at,
        attempt=row.attempt,
    )


def _config_from_row(row: SystemConfigRow) -> SystemConfigEntry:
    return SystemConfigEntry(
        key=row.key,
        value=row.value,
        description=row.description,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class PostgresStore(FaucetStore):
    """All capabilities backed by PostgreSQL."""

    backend_name = "postgres"

    def __init__(
        self,
        engine: AsyncEngine,
        visibility_timeout: timedelta = timedelta(minutes=5),
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.engine = engine
        self.visibility_timeout = visibility_timeout
        self._session_factory = session_factory or build_session_factory(engine)

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Session scope translating driver connectivity errors."""
        try:
            async with self._session_factory() as session:
                yield session
        except _CONNECTIVITY_ERRORS as e:
            metrics.record_storage_error(self.backend_name, operation)
            logger.error(
                "storage_unavailable",
                backend=self.backend_name,
                operation=operation,
                error=str(e),
            )
            raise StorageUnavailableError(self.backend_name, operation, str(e)) from e

    async def close(self) -> None:
        await self.engine.dispose()

    # ========================================================================
    # Identity
    # ========================================================================

    async def upsert_user(self, user: User) -> User:
        stmt = insert(UserRow).values(
            id=user.id,
            channel=user.channel.value,
            handle=normalize_handle(user.handle),
            role=user.role.value,
            domain=user.domain,
            last_seen_at=user.last_seen_at,
        )
        # id never changes once assigned
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserRow.channel, UserRow.handle],
            set_={
                "role": stmt.excluded.role,
                "domain": stmt.excluded.domain,
                "last_seen_at": stmt.excluded.last_seen_at,
            },
        ).returning(UserRow)
        async with self._session("upsert_user") as session:
            row = (await session.execute(stmt)).scalar_one()
            stored = _user_from_row(row)
            await session.commit()
        return stored

    async def find_user(self, channel: str, handle: str) -> User | None:
        stmt = select(UserRow).where(
            UserRow.channel == channel.strip().lower(),
            UserRow.handle == normalize_handle(handle),
        )
        async with self._session("find_user") as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _user_from_row(row) if row else None

    async def set_role(self, user_id: UUID, role: Role) -> None:
        stmt = update(UserRow).where(UserRow.id == user_id).values(role=role.value)
        async with self._session("set_role") as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount == 0:
            logger.warning("set_role_user_missing", backend=self.backend_name, user_id=str(user_id))

    # ========================================================================
    # Mint ledger
    # ========================================================================

    async def enqueue(self, request: MintRequest) -> None:
        stmt = (
            insert(MintRequestRow)
            .values(
                id=request.id,
                user_id=request.user_id,
                channel=request.channel.value,
                amount=request.amount,
                status=request.status.value,
                tx_reference=request.tx_reference,
                error=request.error,
                requested_at=request.requested_at,
                processed_at=request.processed_at,
                attempt=request.attempt,
            )
            .on_conflict_do_nothing(index_elements=[MintRequestRow.id])
        )
        async with self._session("enqueue") as session:
            await session.execute(stmt)
            await session.commit()

    async def insert_processing(self, request: MintRequest) -> None:
        if request.status != MintStatus.PROCESSING or request.processed_at is not None:
            raise ValueError("insert_processing takes a held request without processed_at")
        stmt = (
            insert(MintRequestRow)
            .values(
                id=request.id,
                user_id=request.user_id,
                channel=request.channel.value,
                amount=request.amount,
                status=request.status.value,
                requested_at=request.requested_at,
                processed_at=None,
                attempt=request.attempt,
            )
            .on_conflict_do_nothing(index_elements=[MintRequestRow.id])
        )
        async with self._session("insert_processing") as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                current = (
                    await session.execute(
                        select(MintRequestRow.status).where(MintRequestRow.id == request.id)
                    )
                ).scalar_one_or_none()
                raise InvalidTransitionError(
                    request.id,
                    MintStatus.parse(current) if current else None,
                    MintStatus.PROCESSING,
                )
            await session.commit()

    async def claim_next_pending(self) -> MintRequest | None:
        now = utc_now()
        async with self._session("claim_next_pending") as session:
            row = (
                await session.execute(claim_candidate_statement(now - self.visibility_timeout))
            ).scalar_one_or_none()
            if row is None:
                await session.rollback()
                return None

            reclaimed = row.status == MintStatus.PROCESSING.value
            row.status = MintStatus.PROCESSING.value
            row.processed_at = now
            row.attempt = row.attempt + 1
            await session.commit()
            claimed = _request_from_row(row)

        if reclaimed:
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
        stmt = (
            update(MintRequestRow)
            .where(
                MintRequestRow.id == request_id,
                MintRequestRow.status == MintStatus.PENDING.value,
            )
            .values(status=status.value, attempt=MintRequestRow.attempt + 1)
        )
        async with self._session("update_status") as session:
            result = await session.execute(stmt)
            if status != MintStatus.PROCESSING or result.rowcount == 0:
                await session.rollback()
                current = (
                    await session.execute(
                        select(MintRequestRow.status).where(MintRequestRow.id == request_id)
                    )
                ).scalar_one_or_none()
                raise InvalidTransitionError(
                    request_id, MintStatus.parse(current) if current else None, status
                )
            await session.commit()

    async def record_outcome(self, outcome: MintOutcome) -> None:
        request = outcome.request
        non_terminal = (MintStatus.PENDING.value, MintStatus.PROCESSING.value)
        stmt = (
            update(MintRequestRow)
            .where(
                MintRequestRow.id == request.id,
                or_(
                    MintRequestRow.status.in_(non_terminal),
                    MintRequestRow.status == request.status.value,
                ),
            )
            .values(
                status=request.status.value,
                tx_reference=request.tx_reference,
                error=request.error,
                processed_at=request.processed_at,
                attempt=request.attempt,
            )
        )
        async with self._session("record_outcome") as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                current = (
                    await session.execute(
                        select(MintRequestRow.status).where(MintRequestRow.id == request.id)
                    )
                ).scalar_one_or_none()
                raise InvalidTransitionError(
                    request.id, MintStatus.parse(current) if current else None, request.status
                )
            await session.commit()

    async def find_request(self, request_id: UUID) -> MintRequest | None:
        async with self._session("find_request") as session:
            row = await session.get(MintRequestRow, request_id)
            return _request_from_row(row) if row else None

    # ========================================================================
    # Quota ledger
    # ========================================================================

    async def record_mint(self, user_id: UUID, day: date, amount: int) -> None:
        stmt = insert(QuotaRow).values(
            user_id=user_id, day=day, minted_total=amount, success_count=0
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[QuotaRow.user_id, QuotaRow.day],
            set_={"minted_total": QuotaRow.minted_total + stmt.excluded.minted_total},
        )
        async with self._session("record_mint") as session:
            await session.execute(stmt)
            await session.commit()

    async def record_success(self, user_id: UUID, day: date) -> None:
        stmt = insert(QuotaRow).values(
            user_id=user_id, day=day, minted_total=0, success_count=1
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[QuotaRow.user_id, QuotaRow.day],
            set_={"success_count": QuotaRow.success_count + 1},
        )
        async with self._session("record_success") as session:
            await session.execute(stmt)
            await session.commit()

    async def fetch_quota(self, user_id: UUID, day: date) -> Quota | None:
        async with self._session("fetch_quota") as session:
            row = await session.get(QuotaRow, (user_id, day))
            if row is None:
                return None
            return Quota(
                user_id=row.user_id,
                day=row.day,
                minted_total=row.minted_total,
                success_count=row.success_count,
            )

    # ========================================================================
    # Reporting
    # ========================================================================

    async def daily_summary(self, day: date) -> list[DailyReportRow]:
        start, end = day_bounds(day)
        stmt = (
            select(
                MintRequestRow.channel,
                func.coalesce(func.sum(MintRequestRow.amount), 0),
                func.coalesce(
                    func.sum(case((MintRequestRow.status == MintStatus.COMPLETED.value, 1), else_=0)),
                    0,
                ),
                func.coalesce(
                    func.sum(case((MintRequestRow.status == MintStatus.FAILED.value, 1), else_=0)),
                    0,
                ),
            )
            .where(MintRequestRow.requested_at >= start, MintRequestRow.requested_at < end)
            .group_by(MintRequestRow.channel)
            .order_by(MintRequestRow.channel)
        )
        async with self._session("daily_summary") as session:
            rows = (await session.execute(stmt)).all()

        return [
            DailyReportRow(
                channel=channel,
                total_amount=int(total),
                success_count=int(success),
                failure_count=int(failure),
            )
            for channel, total, success, failure in rows
        ]

    async def log_failure(self, request_id: UUID, when: datetime, reason: str) -> None:
        async with self._session("log_failure") as session:
            session.add(MintFailureRow(request_id=request_id, failed_at=when, reason=reason))
            await session.commit()

    async def list_failures(self, request_id: UUID | None = None) -> list[MintFailure]:
        stmt = select(MintFailureRow).order_by(MintFailureRow.id)
        if request_id is not None:
            stmt = stmt.where(MintFailureRow.request_id == request_id)
        async with self._session("list_failures") as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            MintFailure(request_id=row.request_id, failed_at=row.failed_at, reason=row.reason)
            for row in rows
        ]

    # ========================================================================
    # System config
    # ========================================================================

    async def get_config(self, key: str) -> SystemConfigEntry | None:
        async with self._session("get_config") as session:
            row = await session.get(SystemConfigRow, key)
            return _config_from_row(row) if row else None

    async def set_config(self, key: str, value: str, description: str | None = None) -> None:
        now = utc_now()
        stmt = insert(SystemConfigRow).values(
            key=key, value=value, description=description, created_at=now, updated_at=now
        )
        update_set = {"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at}
        if description is not None:
            update_set["description"] = stmt.excluded.description
        stmt = stmt.on_conflict_do_update(index_elements=[SystemConfigRow.key], set_=update_set)
        async with self._session("set_config") as session:
            await session.execute(stmt)
            await session.commit()

    async def list_configs(self) -> list[SystemConfigEntry]:
        async with self._session("list_configs") as session:
            rows = (
                await session.execute(select(SystemConfigRow).order_by(SystemConfigRow.key))
            ).scalars().all()
        return [_config_from_row(row) for row in rows]
