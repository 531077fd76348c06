"""
Maintenance Workers — housekeeping for the idempotency ledger.

Expired idempotency records are already ignored (and taken over) by the
gateway; this job only keeps the table from growing without bound.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.clock import Clock, get_clock
from workers.celery_app import celery_app

logger = structlog.get_logger()


async def purge_expired_keys(db: AsyncSession, clock: Clock) -> int:
    from core.config import get_settings
    from idempotency.store import IdempotencyStore

    settings = get_settings()
    store = IdempotencyStore(
        db,
        clock,
        ttl=timedelta(hours=settings.idempotency_ttl_hours),
        lock_timeout=timedelta(seconds=settings.idempotency_lock_seconds),
    )
    purged = await store.purge_expired()
    await db.commit()
    return purged


@celery_app.task(
    name="workers.maintenance.purge_expired_idempotency_keys",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def purge_expired_idempotency_keys(self):
    """Hourly job: delete idempotency records past their TTL."""
    run_id = self.request.id or "manual"
    logger.info("idempotency_purge.started", run_id=run_id)

    async def _purge():
        from core.config import get_settings

        engine = create_async_engine(get_settings().database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession)
            async with async_session() as db:
                purged = await purge_expired_keys(db, get_clock())
            logger.info("idempotency_purge.completed", run_id=run_id, purged=purged)
            return {"status": "success", "purged": purged}
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_purge())
    except Exception as exc:
        logger.error("idempotency_purge.failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
