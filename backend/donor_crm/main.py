import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from donor_crm import config
from donor_crm.api.journeys import router as journeys_router
from donor_crm.api.reports import router as reports_router
from donor_crm.db.init import close_db, get_database, init_db
from donor_crm.services.journey_executor import JourneyExecutor
from donor_crm.services.journey_scheduler import JourneyScheduler
from donor_crm.services.notifications import build_notification_sender

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== APPLICATION STARTUP ===")
    logger.info("Initializing database...")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise

    app.state.executor = JourneyExecutor(build_notification_sender())
    app.state.scheduler = JourneyScheduler(app.state.executor)
    if config.JOURNEY_SCHEDULER_ENABLED:
        await app.state.scheduler.start()
    else:
        logger.info("In-process journey scheduler disabled, expecting Celery beat to drive ticks.")

    logger.info("API endpoints available:")
    logger.info("  - /api/journeys: Journey management, enrollment and runs")
    logger.info("  - /api/reports: Report management, runs and exports")
    logger.info("=== APPLICATION STARTUP COMPLETE ===")

    yield

    logger.info("=== APPLICATION SHUTDOWN ===")
    await app.state.scheduler.stop()
    close_db()
    logger.info("=== APPLICATION SHUTDOWN COMPLETE ===")


app = FastAPI(title="Donor CRM", lifespan=lifespan)

# For development, allowing all origins is convenient.
# For production, you would restrict this to your frontend's domain.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail})


@app.get("/health")
async def health_check():
    """Health check with database status"""
    try:
        db = get_database()
        await db.command("ping")
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
        "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(journeys_router, prefix="/api", tags=["journeys"])
app.include_router(reports_router, prefix="/api", tags=["reports"])
