import logging
from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie

from donor_crm import config
from donor_crm.models.campaign import Campaign
from donor_crm.models.contact import Contact
from donor_crm.models.donation import Donation
from donor_crm.models.journey import Journey
from donor_crm.models.journey_run import JourneyRun
from donor_crm.models.organization import Organization
from donor_crm.models.report import Report

DOCUMENT_MODELS = [Organization, Contact, Campaign, Donation, Journey, JourneyRun, Report]

logger = logging.getLogger(__name__)

_client = None
_database = None


async def init_db(client=None, db_name: str = None):
    """
    Initialise Beanie for every document model.
    A real Motor client is built from MONGO_URI unless one is injected (tests pass a mock client).
    """
    global _client, _database
    try:
        logger.info("Initializing database connection...")
        if client is None:
            client = AsyncIOMotorClient(config.MONGO_URI)
            # Test the connection
            await client.admin.command("ping")
            logger.info("MongoDB connection test successful.")

        _client = client
        _database = client[db_name or config.MONGO_DB_NAME]
        await init_beanie(database=_database, document_models=DOCUMENT_MODELS)
        logger.info("MongoDB connection established and Beanie initialized.")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise


def close_db():
    """Close the client opened by init_db; each Celery task opens its own."""
    global _client, _database
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed.")
    _client = None
    _database = None


def get_database():
    if _database is None:
        raise RuntimeError("Database has not been initialized, call init_db() first")
    return _database
