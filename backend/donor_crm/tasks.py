import asyncio
import logging

from donor_crm.celery_config import celery_app
from donor_crm.db.init import close_db, init_db
from donor_crm.services.journey_executor import JourneyExecutor
from donor_crm.services.notifications import build_notification_sender

logger = logging.getLogger(__name__)


@celery_app.task(name="donor_crm.tasks.process_due_journey_runs_task", acks_late=True)
def process_due_journey_runs_task():
    """
    Celery-driven tick for deployments that run the scheduler out of process
    (JOURNEY_SCHEDULER_ENABLED=false on the API).
    """

    async def process():
        await init_db()
        try:
            logger.info("=== PROCESS_DUE_JOURNEY_RUNS_TASK STARTED ===")
            executor = JourneyExecutor(build_notification_sender())
            processed = await executor.tick()
            logger.info(f"=== PROCESS_DUE_JOURNEY_RUNS_TASK COMPLETED === processed {processed} runs")
            return processed
        finally:
            close_db()

    try:
        return asyncio.run(process())
    except Exception as e:
        logger.error(f"Due journey run processing failed: {e}", exc_info=True)
        raise


@celery_app.task(name="donor_crm.tasks.release_stale_claims_task")
def release_stale_claims_task():
    async def release():
        await init_db()
        try:
            released = await JourneyExecutor().release_stale_claims()
            if released:
                logger.warning(f"[RECOVERY] Released {released} stale journey run claims")
            return released
        finally:
            close_db()

    try:
        return asyncio.run(release())
    except Exception as e:
        logger.error(f"Stale claim release failed: {e}", exc_info=True)
        raise
