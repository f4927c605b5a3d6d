"""
Transfer Capability - boundary to whatever actually moves the value.

The pipeline treats any exception from submit_transfer as a permanent
failure for that attempt and never retries inside the call.
"""

from typing import Protocol
from uuid import uuid4

from structlog import get_logger

from faucet.models.domain import MintRequest

logger = get_logger(__name__)


class TransferClient(Protocol):
    """
    Transfer protocol.

    Implementations need not be idempotent; the pipeline calls
    submit_transfer at most once per processing attempt.
    """

    async def submit_transfer(self, request: MintRequest) -> str:
        """
        Submit the transfer for a request.

        Args:
            request: The request being processed

        Returns:
            Transaction reference

        Raises:
            Exception: Any error marks the request failed
        """
        ...


class LoggingTransferClient:
    """Mock transfer that logs and always succeeds with a fresh reference."""

    async def submit_transfer(self, request: MintRequest) -> str:
        tx_reference = f"mock-tx-{uuid4()}"
        logger.info(
            "transfer_submitted",
            request_id=str(request.id),
            user_id=str(request.user_id),
            amount=request.amount,
            tx_reference=tx_reference,
        )
        return tx_reference
