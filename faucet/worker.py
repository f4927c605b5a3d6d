"""
Mint Worker - decoupled-mode consumer process.

Connects the configured store, loads limit overrides, starts
FAUCET_QUEUE_WORKERS workers and runs until SIGINT/SIGTERM.

Usage:
    python -m faucet.worker
"""

import asyncio
import signal

from structlog import get_logger

from faucet.config import Settings, get_settings
from faucet.observability import setup_logging, setup_tracing, start_metrics_server
from faucet.services.faucet import FaucetService
from faucet.services.transfer import LoggingTransferClient, TransferClient
from faucet.storage import create_store

logger = get_logger(__name__)


async def run_worker(
    config: Settings,
    shutdown_event: asyncio.Event,
    transfer: TransferClient | None = None,
) -> None:
    """Run workers until shutdown_event is set, then drain and disconnect."""
    store = await create_store(config)
    try:
        service = FaucetService(store, transfer or LoggingTransferClient(), config)
        await service.refresh_limits()

        queue = service.create_queue()
        queue.start(config.queue_workers)
        logger.info(
            "worker_running",
            backend=store.backend_name,
            workers=config.queue_workers,
            poll_interval=config.queue_poll_interval_seconds,
            retry_backoff=config.queue_retry_backoff_seconds,
        )

        await shutdown_event.wait()
        logger.info("worker_shutdown_requested")
        await queue.close()
    finally:
        await store.close()
        logger.info("worker_stopped")


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, shutdown_event.set)


async def _main() -> None:
    shutdown_event = asyncio.Event()
    _install_signal_handlers(shutdown_event)
    await run_worker(get_settings(), shutdown_event)


def main() -> None:
    setup_logging()
    setup_tracing()
    start_metrics_server()
    asyncio.run(_main())


if __name__ == "__main__":
    main()
