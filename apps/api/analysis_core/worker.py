"""
Analysis worker process.

Runs WORKER_CONCURRENCY orchestrator loops against the shared queue until
SIGINT or SIGTERM. Any number of worker processes may run side by side.

    analysis-worker --concurrency 8
"""

import argparse
import asyncio
import logging
import signal
from typing import List, Optional

from analysis_core.core.config import settings
from analysis_core.db.database import dispose_engine
from analysis_core.services.container import AnalysisServices, build_services

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Process analysis jobs from the shared queue")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.WORKER_CONCURRENCY,
        help="Number of concurrent worker loops (default: %(default)s)"
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.QUEUE_BATCH_SIZE,
        help="Jobs received per poll (default: %(default)s)"
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create the durable cache tables before starting"
    )
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    return parser.parse_args(argv)


async def run_workers(
    services: AnalysisServices,
    concurrency: int,
    batch_size: int = settings.QUEUE_BATCH_SIZE,
    stop_event: Optional[asyncio.Event] = None,
    receive_wait: float = settings.QUEUE_RECEIVE_WAIT
) -> None:
    """Run orchestrator loops until stop_event is set. A loop notices the stop within receive_wait."""
    stop_event = stop_event or asyncio.Event()
    logger.info(f"Starting {concurrency} worker loop(s) on queue {services.queue.name}")
    await asyncio.gather(*(
        services.orchestrator.run(stop_event, batch_size=batch_size, wait_timeout=receive_wait)
        for _ in range(max(concurrency, 1))
    ))


async def _serve(args: argparse.Namespace) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    services = await build_services(create_tables=args.create_tables)
    try:
        await run_workers(services, args.concurrency, args.batch_size, stop_event)
    finally:
        await services.close()
        await dispose_engine()
        logger.info("Worker stopped")


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    asyncio.run(_serve(args))


if __name__ == "__main__":
    main()
