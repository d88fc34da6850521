"""
Scheduler module: APScheduler setup for background cron jobs
"""
import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from app.config import SCHEDULER_ENABLED
from app.tasks.class_jobs import job_send_class_reminders
from app.tasks.notification_jobs import job_deliver_notifications
from app.tasks.payment_jobs import job_reconcile_payments

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone="UTC")


def register_jobs():
    # 1) Class reminders, 24h and 1h before start. Every hour on the hour.
    scheduler.add_job(
        job_send_class_reminders,
        trigger=CronTrigger(minute=0, timezone="UTC"),
        id="send_class_reminders",
        name="Send class reminders",
        replace_existing=True,
    )

    # 2) Reconcile Stripe payments. Every day at 02:00 UTC.
    scheduler.add_job(
        job_reconcile_payments,
        trigger=CronTrigger(hour=2, minute=0, timezone="UTC"),
        id="reconcile_payments",
        name="Reconcile payments",
        replace_existing=True,
    )

    # 3) Email pending notifications. Every minute.
    scheduler.add_job(
        job_deliver_notifications,
        trigger=CronTrigger(minute="*", timezone="UTC"),
        id="deliver_notifications",
        name="Deliver notifications",
        replace_existing=True,
    )


def start_scheduler():
    """Register all cron jobs and start the scheduler."""
    if not SCHEDULER_ENABLED:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")
        return

    register_jobs()
    scheduler.start()
    logger.info("Scheduler started with %d jobs", len(scheduler.get_jobs()))


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
