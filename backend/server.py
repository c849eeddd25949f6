from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from routes import webhooks, admin_plan_mappings, admin_webhook_events

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from job_runner import run_webhook_retry_sweep
from services import webhook_settings
from services.payload_decoders import registered_providers
from services.reconciliation_dispatcher import ReconciliationDispatcher
from services.reconciliation_pipeline import ReconciliationPipeline

# In-memory job store: the sweep job holds a reference to the live pipeline
scheduler = AsyncIOScheduler()

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Subscription Reconciliation API")
    await database.connect()

    if not webhook_settings.HOTMART_HOTTOK:
        logger.warning("HOTMART_HOTTOK is not set - Hotmart callbacks are accepted without verification")
    if not webhook_settings.DOPPUS_SECRET_KEY:
        logger.warning("DOPPUS_SECRET_KEY is not set - Doppus callbacks are accepted without verification")

    pipeline = ReconciliationPipeline(database.get_store())
    dispatcher = ReconciliationDispatcher(pipeline)
    dispatcher.start()
    app.state.pipeline = pipeline
    app.state.dispatcher = dispatcher

    # Re-drive failed, stale and overflowed events
    scheduler.add_job(
        run_webhook_retry_sweep,
        IntervalTrigger(minutes=webhook_settings.WEBHOOK_RETRY_SWEEP_MINUTES),
        args=[pipeline],
        id="webhook_retry_sweep",
        name="Webhook Retry Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Subscription Reconciliation API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await dispatcher.stop()
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Subscription Reconciliation API",
    description="Payment provider webhook ingestion and subscription reconciliation",
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
app.include_router(webhooks.router)
app.include_router(admin_plan_mappings.router)
app.include_router(admin_webhook_events.router)

# Health check
@app.get("/api/health")
async def health_check():
    dispatcher = getattr(app.state, "dispatcher", None)
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "providers": registered_providers(),
        "dispatcher_running": bool(dispatcher and dispatcher.running),
        "queue_depth": dispatcher.queue.qsize() if dispatcher else 0,
    }


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
