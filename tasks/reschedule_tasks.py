"""
tasks/reschedule_tasks.py
Periodic cleanup of reschedule negotiations.

Open requests whose `expires_at` has passed are marked expired, the
session's pending pointer is cleared, and both parties are notified.
Running twice has no side effect: expired requests are no longer open.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _expire_stale_requests() -> int:
    """
    Celery runs each task in a fresh event loop, so the task gets its own
    engine instead of reusing the API's pool.
    """
    from services.booking.engine import SessionTransitionEngine
    from services.notification.dispatcher import NotificationDispatcher

    engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_factory() as db:
            outcomes = await SessionTransitionEngine(db).expire_stale_requests()
            await db.commit()
            notifications = [n for outcome in outcomes for n in outcome.notifications]
            await NotificationDispatcher(db).deliver(notifications)
            return len(outcomes)
    finally:
        await engine.dispose()


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def expire_stale_reschedule_requests(self) -> int:
    """Beat task. Returns how many requests were expired."""
    try:
        expired = asyncio.run(_expire_stale_requests())
    except Exception as e:
        logger.error(f"Reschedule expiry sweep failed: {e}")
        raise self.retry(exc=e)
    if expired:
        logger.info(f"Expired {expired} stale reschedule requests")
    return expired
