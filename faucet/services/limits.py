"""
Limit Policy - role -> per-request ceiling and daily cap.

Values come from settings and may be overridden at runtime through the
config store under `limits.<field>` keys (decimal integer strings).
"""

from dataclasses import dataclass, fields, replace

from structlog import get_logger

from faucet.config import Settings
from faucet.models.domain import LimitConfigUpdate
from faucet.models.enums import Role
from faucet.storage.interfaces import ConfigStore

logger = get_logger(__name__)

CONFIG_PREFIX = "limits."


@dataclass(frozen=True)
class RoleLimits:
    """Effective limits for every role. A cap of None means uncapped."""

    default_amount: int
    default_daily_cap: int | None
    privileged_amount: int
    privileged_daily_cap: int | None
    admin_amount: int
    admin_daily_cap: int | None

    @classmethod
    def from_settings(cls, config: Settings) -> "RoleLimits":
        return cls(
            default_amount=config.default_amount,
            default_daily_cap=config.default_daily_cap,
            privileged_amount=config.privileged_amount,
            privileged_daily_cap=config.privileged_daily_cap,
            admin_amount=config.admin_amount,
            admin_daily_cap=config.admin_daily_cap,
        )

    @staticmethod
    def _prefix(role: Role) -> str:
        return "default" if role == Role.USER else role.value

    def ceiling(self, role: Role) -> int:
        value: int = getattr(self, f"{self._prefix(role)}_amount")
        return value

    def daily_cap(self, role: Role) -> int | None:
        value: int | None = getattr(self, f"{self._prefix(role)}_daily_cap")
        return value


def config_key(field_name: str) -> str:
    return f"{CONFIG_PREFIX}{field_name}"


class LimitPolicy:
    """Holds the effective RoleLimits and applies config-store overrides."""

    def __init__(self, config: Settings, config_store: ConfigStore | None = None) -> None:
        self._base = RoleLimits.from_settings(config)
        self._limits = self._base
        self.config_store = config_store

    @property
    def limits(self) -> RoleLimits:
        return self._limits

    def max_amount(self, role: Role) -> int:
        """Per-request ceiling for the role."""
        return self._limits.ceiling(role)

    def default_amount(self, role: Role) -> int:
        """Amount minted when the caller does not name one."""
        return self._limits.ceiling(role)

    def daily_cap(self, role: Role) -> int | None:
        return self._limits.daily_cap(role)

    async def refresh(self) -> RoleLimits:
        """Reload overrides from the config store on top of the configured base."""
        if self.config_store is None:
            return self._limits

        overrides: dict[str, int] = {}
        for field in fields(RoleLimits):
            entry = await self.config_store.get_config(config_key(field.name))
            if entry is None:
                continue
            try:
                value = int(entry.value.strip())
            except ValueError:
                logger.warning("limit_override_unparsable", key=entry.key, value=entry.value)
                continue
            if value <= 0:
                logger.warning("limit_override_not_positive", key=entry.key, value=value)
                continue
            overrides[field.name] = value

        self._limits = replace(self._base, **overrides)
        if overrides:
            logger.info("limit_overrides_loaded", overrides=overrides)
        return self._limits

    async def apply(self, update: LimitConfigUpdate) -> RoleLimits:
        """Persist overrides (when a config store is attached) and apply them now."""
        changes = dict(update.items())
        if self.config_store is not None:
            for name, value in changes.items():
                await self.config_store.set_config(
                    config_key(name), str(value), description=f"Runtime override for {name}"
                )
        self._limits = replace(self._limits, **changes)
        logger.info("limits_updated", changes=changes)
        return self._limits
