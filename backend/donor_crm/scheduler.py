import logging

from celery.schedules import crontab

from donor_crm.celery_config import celery_app
from donor_crm.tasks import process_due_journey_runs_task, release_stale_claims_task

logger = logging.getLogger(__name__)


@celery_app.on_after_configure.connect
def setup_periodic_tasks(sender, **kwargs):
    logger.info("Setting up periodic tasks...")

    # Advance due journey runs every minute
    sender.add_periodic_task(
        crontab(minute="*"),
        process_due_journey_runs_task.s(),
        name="process-due-journey-runs"
    )

    # Hand runs claimed by a crashed process back to the scheduler
    sender.add_periodic_task(
        crontab(minute="*"),
        release_stale_claims_task.s(),
        name="release-stale-journey-claims"
    )

    logger.info("Periodic tasks configured successfully")
