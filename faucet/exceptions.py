"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID

from faucet.models.enums import MintStatus, Role


class FaucetError(Exception):
    """Base exception for all faucet errors."""

    pass


class StorageUnavailableError(FaucetError):
    """Raised when a storage backend cannot be reached."""

    def __init__(self, backend: str, operation: str, detail: str) -> None:
        self.backend = backend
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage unavailable ({backend}.{operation}): {detail}")


class RateLimitExceededError(FaucetError):
    """Base class for user-correctable limit rejections. No state is mutated."""

    pass


class AmountExceedsRoleLimitError(RateLimitExceededError):
    """Raised when a single request exceeds the role's per-request ceiling."""

    def __init__(self, role: Role, amount: int, ceiling: int) -> None:
        self.role = role
        self.amount = amount
        self.ceiling = ceiling
        super().__init__(
            f"Amount {amount} exceeds the {role.value} limit of {ceiling} per request"
        )


class DailyCapReachedError(RateLimitExceededError):
    """Raised when a request would push today's total past the daily cap."""

    def __init__(self, role: Role, requested: int, minted: int, cap: int) -> None:
        self.role = role
        self.requested = requested
        self.minted = minted
        self.cap = cap
        super().__init__(
            f"Daily cap reached for {role.value}: minted {minted} of {cap}, requested {requested}"
        )

    @property
    def remaining(self) -> int:
        """Amount still available today."""
        return max(0, self.cap - self.minted)


class ForbiddenError(FaucetError):
    """Raised when the acting user lacks the role an operation requires."""

    def __init__(self, actor_id: UUID, action: str) -> None:
        self.actor_id = actor_id
        self.action = action
        super().__init__(f"User {actor_id} is not allowed to {action}")


class InvalidAmountError(FaucetError):
    """Raised when a mint amount is not a positive integer."""

    def __init__(self, amount: int) -> None:
        self.amount = amount
        super().__init__(f"Mint amount must be greater than zero, got {amount}")


class TransferFailedError(FaucetError):
    """Raised after a failed transfer has been recorded durably."""

    def __init__(self, request_id: UUID, reason: str) -> None:
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Transfer for request {request_id} failed: {reason}")


class UnauthorizedError(FaucetError):
    """Raised when an asserted identity cannot be resolved."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Unauthorized: {reason}")


class InvalidTransitionError(FaucetError):
    """Raised when a mint request would move backwards or leave a terminal state."""

    def __init__(
        self, request_id: UUID, current: MintStatus | None, target: MintStatus
    ) -> None:
        self.request_id = request_id
        self.current = current
        self.target = target
        current_label = current.value if current is not None else "missing"
        super().__init__(
            f"Invalid transition for request {request_id}: {current_label} -> {target.value}"
        )


class QueueFullError(FaucetError):
    """Raised when a non-blocking submit finds the work queue at capacity."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        super().__init__(f"Mint queue is full (capacity {capacity})")


class QueueClosedError(FaucetError):
    """Raised when submitting to a queue that has been closed."""

    def __init__(self) -> None:
        super().__init__("Mint queue is closed")
