import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.core.database import SessionLocal
from app.services.subscription import SubscriptionService

logger = logging.getLogger(__name__)


def sweep_due_subscriptions():
    """
    Scheduled task applying due lifecycle transitions (trial end, timed
    pause end, period expiry) to enrollments nobody has touched lately.
    The lazy check on every load stays the source of truth.
    """
    db = SessionLocal()
    try:
        updated = SubscriptionService(db).expire_due()
        logger.info(
            f"[{datetime.now(timezone.utc)}] Subscription sweep completed. "
            f"Updated {updated} enrollments."
        )
    except Exception as e:
        logger.error(f"Error during subscription sweep: {e}", exc_info=True)
    finally:
        db.close()


def start_scheduler():
    """
    Initialize and start the APScheduler for the subscription sweep.
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        sweep_due_subscriptions,
        trigger=IntervalTrigger(minutes=settings.subscription_sweep_interval_minutes),
        id="subscription_lifecycle_sweep",
        name="Expire due subscriptions",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info(
        "Subscription sweep scheduled every "
        f"{settings.subscription_sweep_interval_minutes} minutes."
    )

    return scheduler


def shutdown_scheduler(scheduler: AsyncIOScheduler):
    """
    Gracefully shutdown the scheduler.
    """
    if scheduler:
        scheduler.shutdown()
        logger.info("Subscription sweep scheduler shut down.")
