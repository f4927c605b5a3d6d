"""
Rate Limiter - admits or rejects a mint amount and records the debit.

The in-process counter keyed by (user_id, day) is a fast-reject cache for
this process only. It starts empty after a restart and is not shared
between processes; the durable quota ledger stays authoritative.
"""

import asyncio
from datetime import UTC, date, datetime
from uuid import UUID

from structlog import get_logger

from faucet.exceptions import AmountExceedsRoleLimitError, DailyCapReachedError
from faucet.models.domain import User
from faucet.observability.metrics import metrics
from faucet.services.limits import LimitPolicy
from faucet.storage.interfaces import QuotaLedger

logger = get_logger(__name__)


def _today() -> date:
    return datetime.now(UTC).date()


class RateLimiter:
    """authorize_and_debit: ceiling check, daily cap check, durable debit."""

    def __init__(self, policy: LimitPolicy, quotas: QuotaLedger) -> None:
        self.policy = policy
        self.quotas = quotas
        self._lock = asyncio.Lock()
        self._minted: dict[tuple[UUID, date], int] = {}

    def minted_in_process(self, user_id: UUID, day: date | None = None) -> int:
        """Amount this process has admitted for the user on the day."""
        return self._minted.get((user_id, day or _today()), 0)

    async def authorize_and_debit(self, user: User, amount: int, day: date | None = None) -> None:
        """
        Admit `amount` for `user` and record it in the quota ledger.

        Raises AmountExceedsRoleLimitError or DailyCapReachedError without
        changing any state. A failing durable write rolls back the in-process
        increment and propagates.
        """
        day = day or _today()
        ceiling = self.policy.max_amount(user.role)
        if amount > ceiling:
            metrics.record_rejection(user.role.value, "amount_exceeds_role_limit")
            logger.info(
                "rate_limit_rejected",
                reason="amount_exceeds_role_limit",
                user_id=str(user.id),
                role=user.role.value,
                amount=amount,
                ceiling=ceiling,
            )
            raise AmountExceedsRoleLimitError(user.role, amount, ceiling)

        cap = self.policy.daily_cap(user.role)
        key = (user.id, day)
        if cap is not None:
            async with self._lock:
                self._evict_before(day)
                current = self._minted.get(key, 0)
                if current + amount > cap:
                    metrics.record_rejection(user.role.value, "daily_cap_reached")
                    logger.info(
                        "rate_limit_rejected",
                        reason="daily_cap_reached",
                        user_id=str(user.id),
                        role=user.role.value,
                        amount=amount,
                        minted=current,
                        cap=cap,
                    )
                    raise DailyCapReachedError(user.role, amount, current, cap)
                self._minted[key] = current + amount

        try:
            await self.quotas.record_mint(user.id, day, amount)
        except Exception:
            if cap is not None:
                async with self._lock:
                    remaining = self._minted.get(key, 0) - amount
                    if remaining > 0:
                        self._minted[key] = remaining
                    else:
                        self._minted.pop(key, None)
            raise

        logger.debug("mint_debited", user_id=str(user.id), amount=amount, day=day.isoformat())

    def _evict_before(self, day: date) -> None:
        """Drop counters for earlier days. Caller holds the lock."""
        stale = [key for key in self._minted if key[1] < day]
        for key in stale:
            del self._minted[key]
