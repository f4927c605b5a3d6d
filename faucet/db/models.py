"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Enum values are stored as their lower-case strings and guarded by CHECK constraints.
"""

from datetime import UTC, date, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UserRow(Base):
    """
    ORM model for users table.

    One row per (channel, handle); handle is stored lower-cased.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    handle: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="user")
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("channel IN ('web', 'telegram', 'discord')", name="ck_users_channel"),
        CheckConstraint("role IN ('user', 'privileged', 'admin')", name="ck_users_role"),
        UniqueConstraint("channel", "handle", name="uq_users_channel_handle"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<UserRow(id={self.id}, channel={self.channel}, handle={self.handle}, role={self.role})>"


class MintRequestRow(Base):
    """
    ORM model for mint_requests table.

    The lifecycle column is advanced by claim, update_status, insert_processing
    and record_outcome only.
    """

    __tablename__ = "mint_requests"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    tx_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_mint_requests_amount_positive"),
        CheckConstraint("attempt >= 0", name="ck_mint_requests_attempt_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_mint_requests_status",
        ),
        Index("idx_mint_requests_status_requested_at", "status", "requested_at"),
        Index("idx_mint_requests_requested_at", "requested_at"),
        Index("idx_mint_requests_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<MintRequestRow(id={self.id}, status={self.status}, amount={self.amount})>"


class QuotaRow(Base):
    """ORM model for quotas table - per-user, per-day accumulation."""

    __tablename__ = "quotas"

    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    minted_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("minted_total >= 0", name="ck_quotas_minted_non_negative"),
        CheckConstraint("success_count >= 0", name="ck_quotas_success_non_negative"),
    )


class MintFailureRow(Base):
    """ORM model for mint_failures table - append-only."""

    __tablename__ = "mint_failures"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    request_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("mint_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("idx_mint_failures_request_id", "request_id"),)


class SystemConfigRow(Base):
    """ORM model for system_config table - runtime limit overrides."""

    __tablename__ = "system_config"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
