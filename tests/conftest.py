"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- Settings with small, predictable limits
- A `store` fixture parametrized over every backend (PostgreSQL and MongoDB
  only when FAUCET_TEST_DATABASE_URL / FAUCET_TEST_MONGODB_URL are set)
- Users and mint requests in various states
- Transfer doubles
"""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

# Keep the import-time settings on the in-memory backend
os.environ.setdefault("FAUCET_STORAGE_BACKEND", "memory")
os.environ.setdefault("FAUCET_METRICS_ENABLED", "false")

from faucet.config import Settings
from faucet.models.domain import MintRequest, User
from faucet.models.enums import Channel, MintStatus, Role
from faucet.services.faucet import FaucetService
from faucet.storage.interfaces import FaucetStore
from faucet.storage.memory import MemoryStore

VISIBILITY_TIMEOUT = timedelta(minutes=5)

# ============================================================================
# Settings Fixtures
# ============================================================================


def make_settings(**overrides) -> Settings:
    """Settings isolated from .env with the limits used across the suite."""
    values = {
        "storage_backend": "memory",
        "default_amount": 100,
        "default_daily_cap": 150,
        "privileged_amount": 1000,
        "privileged_daily_cap": None,
        "admin_amount": 5000,
        "admin_daily_cap": None,
        "privileged_domains": "example.org, Partner.IO",
        "queue_depth": 4,
        "queue_poll_interval_seconds": 0.05,
        "queue_max_attempts": 3,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def config() -> Settings:
    """Suite settings: User ceiling 100, daily cap 150."""
    return make_settings()


# ============================================================================
# Store Fixtures
# ============================================================================


async def _postgres_store() -> AsyncGenerator[FaucetStore, None]:
    from sqlalchemy.ext.asyncio import create_async_engine

    from faucet.db.models import Base
    from faucet.storage.postgres import PostgresStore

    engine = create_async_engine(os.environ["FAUCET_TEST_DATABASE_URL"])
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    store = PostgresStore(engine, VISIBILITY_TIMEOUT)
    try:
        yield store
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await store.close()


async def _mongo_store() -> AsyncGenerator[FaucetStore, None]:
    from faucet.storage.mongo import MongoStore

    database = f"faucet_test_{uuid4().hex[:12]}"
    store = await MongoStore.connect(
        os.environ["FAUCET_TEST_MONGODB_URL"], database, VISIBILITY_TIMEOUT, timeout_ms=2000
    )
    try:
        yield store
    finally:
        await store.client.drop_database(database)
        await store.close()


@pytest.fixture(
    params=[
        "memory",
        pytest.param("postgres", marks=pytest.mark.integration),
        pytest.param("mongodb", marks=pytest.mark.integration),
    ]
)
async def store(request) -> AsyncGenerator[FaucetStore, None]:
    """Every backend behind the same contract."""
    if request.param == "memory":
        yield MemoryStore(VISIBILITY_TIMEOUT)
        return

    env_var = "FAUCET_TEST_DATABASE_URL" if request.param == "postgres" else "FAUCET_TEST_MONGODB_URL"
    if not os.environ.get(env_var):
        pytest.skip(f"{env_var} not set")

    factory = _postgres_store if request.param == "postgres" else _mongo_store
    async for backend in factory():
        yield backend


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore(VISIBILITY_TIMEOUT)


# ============================================================================
# Domain Fixtures
# ============================================================================


def make_user(
    handle: str | None = None,
    channel: Channel = Channel.WEB,
    role: Role = Role.USER,
    domain: str | None = None,
) -> User:
    return User(
        id=uuid4(),
        channel=channel,
        handle=handle or f"user-{uuid4().hex[:8]}",
        role=role,
        domain=domain,
        last_seen_at=datetime.now(UTC),
    )


def make_request(
    user: User,
    amount: int = 10,
    status: MintStatus = MintStatus.PENDING,
    requested_at: datetime | None = None,
    processed_at: datetime | None = None,
    attempt: int = 0,
    channel: Channel | None = None,
) -> MintRequest:
    """A request in any state, with the fields its status requires."""
    if status.is_terminal and processed_at is None:
        processed_at = datetime.now(UTC)
    return MintRequest(
        id=uuid4(),
        user_id=user.id,
        channel=channel or user.channel,
        amount=amount,
        status=status,
        requested_at=requested_at or datetime.now(UTC),
        tx_reference=f"tx-{uuid4().hex[:8]}" if status == MintStatus.COMPLETED else None,
        error="transfer rejected" if status == MintStatus.FAILED else None,
        processed_at=processed_at,
        attempt=attempt,
    )


@pytest.fixture
async def saved_user(store: FaucetStore) -> User:
    """A user persisted in the parametrized store."""
    user = make_user()
    await store.upsert_user(user)
    return user


# ============================================================================
# Transfer Doubles
# ============================================================================


class RecordingTransfer:
    """Succeeds (or fails with `error`) and remembers every request it saw."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[MintRequest] = []

    async def submit_transfer(self, request: MintRequest) -> str:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return f"tx-{len(self.calls)}"


@pytest.fixture
def transfer() -> RecordingTransfer:
    return RecordingTransfer()


@pytest.fixture
def failing_transfer() -> RecordingTransfer:
    return RecordingTransfer(error=RuntimeError("node rejected transfer"))


@pytest.fixture
def service(memory_store: MemoryStore, transfer: RecordingTransfer, config: Settings) -> FaucetService:
    """FaucetService over the in-memory store with a recording transfer."""
    return FaucetService(memory_store, transfer, config)
