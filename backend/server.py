from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from routes import notifications

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

RETRY_INTERVAL_MINUTES = int(os.getenv("NOTIFICATION_RETRY_INTERVAL_MINUTES", "5"))
STALE_RECOVERY_INTERVAL_MINUTES = int(os.getenv("NOTIFICATION_STALE_RECOVERY_INTERVAL_MINUTES", "15"))

# Scheduler job store lives in MongoDB so job state survives restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'notifications')

try:
    from pymongo import MongoClient
    jobstores = {
        'default': MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=MongoClient(mongo_url)
        )
    }
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

from job_runner import run_notification_retry_worker, run_stale_notification_recovery

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests drive the app through TestClient without MongoDB or the scheduler
    if os.getenv("PYTEST_RUNNING"):
        yield
        return

    logger.info("Starting Notification Delivery API")
    await database.connect()

    # Retry sweep: failed notifications whose retry_after has passed
    scheduler.add_job(
        run_notification_retry_worker,
        IntervalTrigger(minutes=RETRY_INTERVAL_MINUTES),
        id="notification_retry_worker",
        name="Notification Retry Worker",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # Rows left pending by a crashed worker
    scheduler.add_job(
        run_stale_notification_recovery,
        IntervalTrigger(minutes=STALE_RECOVERY_INTERVAL_MINUTES),
        id="stale_notification_recovery",
        name="Stale Notification Recovery",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Notification Delivery API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Notification Delivery API",
    description="Email/SMS delivery engine with retry and audit logging",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(notifications.cron_router)
app.include_router(notifications.admin_router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "provider_mode": os.getenv("NOTIFICATION_PROVIDER_MODE", "mock"),
    }

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
