"""Celery background tasks.

Each task builds its own engine: ``asyncio.run`` gives every invocation a
fresh event loop and pooled connections cannot cross loops.
"""

import asyncio
import logging
from datetime import UTC, date, datetime, time, timedelta

from celery import shared_task

from paysync.config import settings
from paysync.core.idempotency import build_idempotency_store
from paysync.database import build_engine, build_session_factory
from paysync.services.reconciliation_service import Classification, ReconciliationEngine
from paysync.services.transaction_manager import ConsistencyTransactionManager

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


def day_window(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


# ==================== RECONCILIATION TASKS ====================


@shared_task(bind=True, max_retries=3)
def run_daily_reconciliation(self, day: str | None = None):
    """Reconcile one day of pairings (default: yesterday, UTC).

    Logs a warning when discrepancies, unmatched or orphaned pairings exist
    and returns the summary.
    """
    target = date.fromisoformat(day) if day else datetime.now(UTC).date() - timedelta(days=1)
    try:
        return run_async(_run_daily_reconciliation(target))
    except Exception as exc:
        logger.error(f"Daily reconciliation for {target} failed: {exc}")
        raise self.retry(exc=exc, countdown=300)


async def _run_daily_reconciliation(day: date) -> dict:
    """Async implementation of the daily reconciliation run."""
    engine = build_engine(settings.database_url)
    store = build_idempotency_store()
    try:
        session_factory = build_session_factory(engine)
        manager = ConsistencyTransactionManager(session_factory, store)
        reconciliation = ReconciliationEngine(session_factory, manager)

        start, end = day_window(day)
        report = await reconciliation.run(start, end)
        summary = report.summary
        counts = summary["counts"]

        attention = (
            counts[Classification.DISCREPANCY]
            + counts[Classification.UNMATCHED]
            + counts[Classification.ORPHANED]
        )
        if attention:
            logger.warning(
                f"Reconciliation {day}: {attention} pairings need attention "
                f"(discrepancy={counts[Classification.DISCREPANCY]}, "
                f"unmatched={counts[Classification.UNMATCHED]}, "
                f"orphaned={counts[Classification.ORPHANED]})"
            )
        else:
            logger.info(f"Reconciliation {day}: all {summary['total']} pairings consistent")

        return {"status": "success", "day": day.isoformat(), "summary": summary}
    finally:
        await store.close()
        await engine.dispose()
