import asyncio
import logging
import sys
import time

from celery.signals import worker_process_init

from donor_crm import config
from donor_crm.celery_config import celery_app
from donor_crm.db.init import close_db, init_db

# Entry point for the Celery worker: celery -A donor_crm.celery_worker worker -B
# Tasks are discovered from the `include` parameter in the Celery configuration.

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@worker_process_init.connect
def on_worker_init(**kwargs):
    """Check the database is reachable when a worker process starts."""
    logger.info("Celery worker process initializing...")
    try:
        asyncio.run(init_db())
        close_db()
        logger.info("Database connection initialized for Celery worker.")
    except Exception as e:
        logger.error(f"Failed to initialize database for Celery worker: {e}", exc_info=True)
        time.sleep(5)
        try:
            asyncio.run(init_db())
            close_db()
            logger.info("Database connection initialized for Celery worker (retry successful).")
        except Exception as retry_error:
            logger.error(f"Failed to initialize database for Celery worker (retry failed): {retry_error}", exc_info=True)
            sys.exit(1)


# Registers the beat schedule
import donor_crm.scheduler  # noqa: E402,F401

celery = celery_app
