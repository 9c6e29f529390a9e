"""Background tasks run inside the API process."""

import asyncio
import logging

from paysync.config import settings
from paysync.core.idempotency import IdempotencyStore

logger = logging.getLogger(__name__)


async def run_idempotency_sweep(store: IdempotencyStore) -> int:
    """Evict expired idempotency entries once."""
    evicted = await store.sweep()
    if evicted:
        logger.info(f"Idempotency sweep evicted {evicted} expired entries")
    return evicted


async def start_idempotency_sweeper(
    store: IdempotencyStore,
    interval_seconds: int | None = None,
) -> None:
    """Sweep the idempotency cache every ``interval_seconds`` until cancelled."""
    interval = interval_seconds or settings.idempotency_sweep_interval_seconds
    logger.info(f"Idempotency sweeper started (interval={interval}s)")

    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await run_idempotency_sweep(store)
            except Exception as e:
                logger.error(f"Idempotency sweep error: {e}")
    finally:
        logger.info("Idempotency sweeper stopped")
