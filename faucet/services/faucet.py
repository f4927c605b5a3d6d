"""
Faucet Service - operations exposed to front ends.

Composes identity resolution, the rate limiter and the mint pipeline.
Front ends (web, chat bots) resolve identities and render results; every
rule about roles, limits and request state lives here or below.
"""

from dataclasses import replace
from datetime import UTC, date, datetime
from uuid import uuid4

from structlog import get_logger

from faucet.config import Settings
from faucet.exceptions import (
    ForbiddenError,
    InvalidAmountError,
    QueueClosedError,
    QueueFullError,
    UnauthorizedError,
)
from faucet.models.domain import (
    DailyReportRow,
    Identity,
    LimitConfigUpdate,
    MintOutcome,
    MintRequest,
    QuotaSnapshot,
    User,
    normalize_handle,
    utc_now,
)
from faucet.models.enums import Channel, Role
from faucet.observability.metrics import metrics
from faucet.observability.tracing import trace_operation
from faucet.services.limits import LimitPolicy, RoleLimits
from faucet.services.pipeline import MintPipeline, MintQueue
from faucet.services.rate_limit import RateLimiter
from faucet.services.transfer import TransferClient
from faucet.storage.interfaces import FaucetStore

logger = get_logger(__name__)


class FaucetService:
    """
    Orchestration over a single store.

    mint() runs the pipeline inline; submit_mint() hands the request to a
    MintQueue when one has been created with create_queue().
    """

    def __init__(self, store: FaucetStore, transfer: TransferClient, config: Settings) -> None:
        self.store = store
        self.config = config
        self.privileged_domains = config.privileged_domain_set
        self.policy = LimitPolicy(config, store)
        self.rate_limiter = RateLimiter(self.policy, store)
        self.pipeline = MintPipeline(store, store, store, transfer)
        self.queue: MintQueue | None = None

    # ========================================================================
    # Limits
    # ========================================================================

    @property
    def limits(self) -> RoleLimits:
        return self.policy.limits

    def default_amount(self, role: Role) -> int:
        return self.policy.default_amount(role)

    def max_amount_for_role(self, role: Role) -> int:
        return self.policy.max_amount(role)

    def max_daily_cap(self, role: Role) -> int | None:
        return self.policy.daily_cap(role)

    async def refresh_limits(self) -> RoleLimits:
        """Load runtime overrides from the config store."""
        return await self.policy.refresh()

    async def update_limits(self, actor: User, update: LimitConfigUpdate) -> RoleLimits:
        """Persist and apply limit overrides. Admin only."""
        if actor.role != Role.ADMIN:
            logger.warning("update_limits_forbidden", actor_id=str(actor.id), role=actor.role.value)
            raise ForbiddenError(actor.id, "update limits")
        if update.is_empty:
            return self.policy.limits
        limits = await self.policy.apply(update)
        logger.info("limits_updated_by_admin", actor_id=str(actor.id), fields=[n for n, _ in update.items()])
        return limits

    # ========================================================================
    # Identity
    # ========================================================================

    def _derive_role(self, existing: Role | None, domain: str | None) -> Role:
        """Admin is sticky; a privileged domain promotes; otherwise keep or default."""
        if existing == Role.ADMIN:
            return Role.ADMIN
        if domain and domain.strip().lower() in self.privileged_domains:
            return Role.PRIVILEGED
        return existing or Role.USER

    async def touch_identity(
        self, channel: Channel | str, handle: str, domain: str | None = None
    ) -> User:
        """
        Load or create the user for an identity and record the visit.

        The user is written on every call so last_seen_at always moves.
        """
        channel = Channel.parse(channel)
        existing = await self.store.find_user(channel.value, handle)
        now = utc_now()

        if existing is None:
            user = User(
                id=uuid4(),
                channel=channel,
                handle=normalize_handle(handle),
                role=self._derive_role(None, domain),
                domain=domain,
                last_seen_at=now,
            )
        else:
            user = replace(
                existing,
                role=self._derive_role(existing.role, domain),
                domain=domain,
                last_seen_at=now,
            )
            if user.role != existing.role:
                logger.info(
                    "user_role_derived",
                    user_id=str(user.id),
                    previous=existing.role.value,
                    role=user.role.value,
                )

        user = await self.store.upsert_user(user)
        metrics.record_identity(channel.value, created=existing is None)
        return user

    async def resolve_identity(self, identity: Identity | None) -> User:
        """Touch the identity a front end resolved; None means resolution failed."""
        if identity is None:
            raise UnauthorizedError("identity could not be resolved")
        return await self.touch_identity(identity.channel, identity.handle, identity.domain)

    async def set_role(
        self, actor: User, channel: Channel | str, handle: str, role: Role
    ) -> User:
        """Assign a role to a (possibly unseen) identity. Admin only."""
        if actor.role != Role.ADMIN:
            logger.warning("set_role_forbidden", actor_id=str(actor.id), role=actor.role.value)
            raise ForbiddenError(actor.id, "change roles")

        channel = Channel.parse(channel)
        existing = await self.store.find_user(channel.value, handle)
        if existing is None:
            user = User(
                id=uuid4(),
                channel=channel,
                handle=normalize_handle(handle),
                role=role,
                domain=None,
                last_seen_at=utc_now(),
            )
            user = await self.store.upsert_user(user)
        else:
            user = replace(existing, role=role)
            await self.store.set_role(user.id, role)

        logger.info(
            "user_role_set",
            actor_id=str(actor.id),
            user_id=str(user.id),
            channel=channel.value,
            role=role.value,
        )
        return user

    async def find_user(self, channel: Channel | str, handle: str) -> User | None:
        return await self.store.find_user(Channel.parse(channel).value, handle)

    # ========================================================================
    # Minting
    # ========================================================================

    def _resolve_amount(self, user: User, amount: int | None) -> int:
        if amount is None:
            return self.policy.default_amount(user.role)
        if amount <= 0:
            raise InvalidAmountError(amount)
        return amount

    async def mint(self, user: User, amount: int | None = None) -> MintOutcome:
        """
        Authorize, debit and mint inline.

        Raises:
            InvalidAmountError: amount is zero or negative
            AmountExceedsRoleLimitError / DailyCapReachedError: nothing recorded
            TransferFailedError: request recorded as failed before raising
            StorageUnavailableError: backend unreachable
        """
        amount = self._resolve_amount(user, amount)
        with trace_operation("mint", user_id=user.id, role=user.role.value, amount=amount):
            await self.rate_limiter.authorize_and_debit(user, amount)
            request = MintRequest.new(user.id, user.channel, amount)
            return await self.pipeline.execute(request)

    def create_queue(self) -> MintQueue:
        """Create the decoupled-mode queue sized from settings."""
        self.queue = MintQueue(
            self.store,
            self.pipeline,
            depth=self.config.queue_depth,
            poll_interval=self.config.queue_poll_interval_seconds,
            max_attempts=self.config.queue_max_attempts,
            retry_backoff=self.config.queue_retry_backoff_seconds,
        )
        return self.queue

    async def submit_mint(
        self, user: User, amount: int | None = None, wait: bool = True
    ) -> MintRequest:
        """Authorize, debit and hand the request to the queue; a worker finishes it."""
        if self.queue is None or self.queue.closed:
            raise QueueClosedError()
        amount = self._resolve_amount(user, amount)
        if not wait and self.queue.is_full:
            raise QueueFullError(self.queue.depth)
        await self.rate_limiter.authorize_and_debit(user, amount)
        request = MintRequest.new(user.id, user.channel, amount)
        await self.queue.submit(request, wait=wait)
        return request

    # ========================================================================
    # Reads
    # ========================================================================

    async def quota_snapshot(self, user: User) -> QuotaSnapshot:
        """Today's durable total and the role's cap."""
        today = datetime.now(UTC).date()
        quota = await self.store.fetch_quota(user.id, today)
        return QuotaSnapshot(
            minted_today=quota.minted_total if quota else 0,
            cap=self.policy.daily_cap(user.role),
        )

    async def daily_summary(self, day: date) -> list[DailyReportRow]:
        return await self.store.daily_summary(day)
