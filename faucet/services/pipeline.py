"""
Mint Pipeline - drives a MintRequest from pending to a terminal state.

Two execution modes share the same processing tail:
- inline: MintPipeline.execute() persists the request already processing, in
  one write, and finishes it in the caller's task
- decoupled: MintQueue.submit() persists and wakes a worker, which claims
  through the ledger and finishes the claimed request

Outcome and quota bookkeeping are two separate atomic writes. A crash between
record_outcome and record_success leaves success_count one short for that day.
"""

import asyncio
import time
from typing import Final

from structlog import get_logger

from faucet.exceptions import QueueClosedError, QueueFullError, TransferFailedError
from faucet.models.domain import MintOutcome, MintRequest
from faucet.observability.logging import log_context
from faucet.observability.metrics import metrics
from faucet.observability.tracing import trace_operation
from faucet.services.transfer import TransferClient
from faucet.storage.interfaces import MintLedger, QuotaLedger, ReportingStore

logger = get_logger(__name__)

_WAKE: Final = object()
_STOP: Final = object()


class MintPipeline:
    """State machine driver shared by the inline and queued modes."""

    def __init__(
        self,
        ledger: MintLedger,
        quotas: QuotaLedger,
        reporting: ReportingStore,
        transfer: TransferClient,
    ) -> None:
        self.ledger = ledger
        self.quotas = quotas
        self.reporting = reporting
        self.transfer = transfer

    async def execute(self, request: MintRequest) -> MintOutcome:
        """
        Inline mode: persist as processing, transfer, record outcome.

        The row is written already held, so no worker can claim it between
        the insert and the transfer.

        Raises:
            TransferFailedError: after the failure has been recorded durably
        """
        held = request.hold_inline()
        await self.ledger.insert_processing(held)
        return await self._finish(held, mode="inline")

    async def process_claimed(self, request: MintRequest) -> MintOutcome:
        """Finish a request a worker obtained from claim_next_pending."""
        return await self._finish(request, mode="queue")

    async def abandon(self, request: MintRequest, reason: str) -> MintOutcome:
        """Fail a claimed request without calling the transfer capability."""
        failed = request.fail(reason)
        outcome = MintOutcome(failed)
        await self.ledger.record_outcome(outcome)
        await self.reporting.log_failure(failed.id, failed.processed_at or failed.requested_at, reason)
        metrics.record_mint(failed.status.value, failed.channel.value, "queue", failed.amount)
        logger.warning(
            "mint_abandoned",
            request_id=str(failed.id),
            attempt=failed.attempt,
            reason=reason,
        )
        return outcome

    async def _finish(self, request: MintRequest, mode: str) -> MintOutcome:
        with trace_operation(
            "mint_transfer", request_id=request.id, amount=request.amount, mode=mode
        ):
            started = time.perf_counter()
            try:
                tx_reference = await self.transfer.submit_transfer(request)
            except Exception as exc:
                metrics.transfer_duration_seconds.observe(time.perf_counter() - started)
                await self._record_failure(request, str(exc) or type(exc).__name__, mode)
                raise TransferFailedError(request.id, str(exc) or type(exc).__name__) from exc
            metrics.transfer_duration_seconds.observe(time.perf_counter() - started)

        completed = request.complete(tx_reference)
        outcome = MintOutcome(completed)
        await self.ledger.record_outcome(outcome)
        await self.quotas.record_success(completed.user_id, completed.day)

        metrics.record_mint(completed.status.value, completed.channel.value, mode, completed.amount)
        logger.info(
            "mint_completed",
            request_id=str(completed.id),
            user_id=str(completed.user_id),
            amount=completed.amount,
            tx_reference=tx_reference,
            attempt=completed.attempt,
            mode=mode,
        )
        return outcome

    async def _record_failure(self, request: MintRequest, reason: str, mode: str) -> None:
        failed = request.fail(reason)
        await self.ledger.record_outcome(MintOutcome(failed))
        await self.reporting.log_failure(failed.id, failed.processed_at or failed.requested_at, reason)
        metrics.record_mint(failed.status.value, failed.channel.value, mode, failed.amount)
        logger.warning(
            "mint_failed",
            request_id=str(failed.id),
            user_id=str(failed.user_id),
            amount=failed.amount,
            error=reason,
            attempt=failed.attempt,
            mode=mode,
        )


class MintQueue:
    """
    Decoupled mode: bounded queue of wake-up signals plus worker tasks.

    The queue carries signals, not requests. Workers always take work through
    ledger.claim_next_pending(), so several workers (or processes) never
    handle the same request, and rows left processing by a crashed worker are
    reclaimed on the next poll once the store's visibility timeout passes.
    """

    def __init__(
        self,
        ledger: MintLedger,
        pipeline: MintPipeline,
        depth: int,
        poll_interval: float = 5.0,
        max_attempts: int = 3,
        retry_backoff: float = 1.0,
    ) -> None:
        if depth <= 0:
            raise ValueError(f"Queue depth must be positive: {depth}")
        self.ledger = ledger
        self.pipeline = pipeline
        self.depth = depth
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self._signals: asyncio.Queue[object] = asyncio.Queue(maxsize=depth)
        self._workers: list[asyncio.Task[None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_full(self) -> bool:
        return self._signals.full()

    async def submit(self, request: MintRequest, wait: bool = True) -> None:
        """
        Persist a pending request and wake a worker.

        With wait=True a full queue blocks the caller; with wait=False it
        raises QueueFullError before anything is persisted.
        """
        if self._closed:
            raise QueueClosedError()
        if not wait and self._signals.full():
            raise QueueFullError(self.depth)

        await self.ledger.enqueue(request)

        if wait:
            await self._signals.put(_WAKE)
        else:
            try:
                self._signals.put_nowait(_WAKE)
            except asyncio.QueueFull:
                # The row is durable; the next poll picks it up
                logger.warning("queue_full_after_enqueue", request_id=str(request.id))
        metrics.queue_depth.set(self._signals.qsize())
        logger.debug("mint_request_submitted", request_id=str(request.id))

    def start(self, workers: int = 1) -> None:
        """Launch worker tasks on the running loop."""
        if self._closed:
            raise QueueClosedError()
        for _ in range(workers):
            worker_id = len(self._workers)
            self._workers.append(
                asyncio.create_task(self._run_worker(worker_id), name=f"mint-worker-{worker_id}")
            )
        logger.info("mint_workers_started", workers=len(self._workers))

    async def join(self) -> None:
        """Wait until every submitted signal has been handled."""
        await self._signals.join()

    async def close(self) -> None:
        """Stop accepting work, let workers finish what they hold, then wait for them."""
        if self._closed:
            return
        self._closed = True
        for _ in self._workers:
            await self._signals.put(_STOP)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("mint_queue_closed")

    async def _run_worker(self, worker_id: int) -> None:
        logger.info("mint_worker_started", worker_id=worker_id)
        while True:
            from_queue = True
            failed = False
            try:
                signal = await asyncio.wait_for(self._signals.get(), timeout=self.poll_interval)
            except TimeoutError:
                signal = _WAKE
                from_queue = False

            try:
                if signal is _STOP:
                    break
                await self._drain(worker_id)
            except Exception as e:
                logger.error(
                    "mint_worker_error",
                    worker_id=worker_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                failed = True
            finally:
                if from_queue:
                    self._signals.task_done()
                    metrics.queue_depth.set(self._signals.qsize())

            if failed and self.retry_backoff > 0:
                # Storage outages would otherwise spin on the next signal
                await asyncio.sleep(self.retry_backoff)

        logger.info("mint_worker_stopped", worker_id=worker_id)

    async def _drain(self, worker_id: int) -> None:
        """Claim and process until nothing is claimable."""
        while True:
            claimed = await self.ledger.claim_next_pending()
            if claimed is None:
                return
            await self._process(worker_id, claimed)

    async def _process(self, worker_id: int, claimed: MintRequest) -> None:
        reclaimed = claimed.attempt > 1
        metrics.record_claim(reclaimed)
        with log_context(request_id=str(claimed.id), worker_id=worker_id):
            logger.info("mint_request_claimed", attempt=claimed.attempt, reclaimed=reclaimed)
            try:
                if claimed.attempt > self.max_attempts:
                    await self.pipeline.abandon(
                        claimed, f"gave up after {claimed.attempt - 1} attempts"
                    )
                else:
                    await self.pipeline.process_claimed(claimed)
            except TransferFailedError as e:
                # Already recorded durably by the pipeline
                logger.debug("mint_request_failure_recorded", reason=e.reason)
            except Exception as e:
                logger.error(
                    "mint_request_processing_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
