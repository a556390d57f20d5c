"""
Background tasks for subscription lifecycle
"""
from app.core.celery import celery_app
from app.core.config import settings
from sqlalchemy.exc import SQLAlchemyError
import logging
import asyncio

from app.database.database import async_engine
from .sweep import run_expiry_sweep, SweepReport

logger = logging.getLogger(__name__)


async def _run_sweep() -> SweepReport:
    try:
        return await run_expiry_sweep()
    finally:
        # Pooled connections belong to this event loop only
        await async_engine.dispose()


@celery_app.task(bind=True, max_retries=settings.SUBSCRIPTION_SWEEP_MAX_RETRIES)
def expire_subscriptions(self):
    """
    Periodic task: expire overdue subscriptions and downgrade or deactivate
    their labs. Per-subscription failures are part of the returned summary;
    only a failure of the whole job (e.g. the database is unreachable) is
    retried, a bounded number of times.
    """
    try:
        logger.info("Starting subscription expiry sweep")

        # Celery doesn't run coroutines directly
        report = asyncio.run(_run_sweep())

        summary = report.summary()
        if report.failures:
            logger.error(f"Subscription expiry sweep finished with failures for labs: {summary['failed_tenants']}")
        logger.info("Subscription expiry sweep completed")
        return {"status": "completed", **summary}

    except SQLAlchemyError as exc:
        logger.error(f"Subscription expiry sweep failed: {str(exc)}")
        raise self.retry(exc=exc, countdown=settings.SUBSCRIPTION_SWEEP_RETRY_SECONDS)
