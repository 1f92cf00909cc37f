"""
Background worker for scheduled reply delivery.

Usage:
    python -m app.worker

Polls for due scheduled messages and sends them. Use this when the API runs
with SCHEDULED_WORKER_ENABLED=false (e.g. several API replicas); otherwise the
API process runs the same loop itself.
"""

import asyncio
import logging

from app.core.config import settings
from app.core.event_bus import EventBus
from app.core.structured_logging import build_log_context
from app.services.scheduled_delivery import run_scheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def worker_loop() -> None:
    """Main worker loop - polls for and sends due scheduled messages."""
    # No SSE clients attach to a standalone worker; events are dropped here.
    bus = EventBus(keepalive_seconds=settings.SSE_KEEPALIVE_SECONDS)
    await run_scheduler(bus)


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(route="worker", method="background"),
        )
        raise


if __name__ == "__main__":
    main()
