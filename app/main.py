from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import database components
from app.database.database import AsyncSessionLocal, async_engine, create_tables

# Import middleware
from app.common.middleware import TenantMiddleware, SecurityHeadersMiddleware

# Import routers
from app.modules.subscriptions.router import router as subscriptions_router

# Import models for table creation
import app.modules.labs.models
import app.modules.subscriptions.models

from app.modules.subscriptions.scheduler import SubscriptionExpiryScheduler
from app.modules.subscriptions.sweep import ExpirySweeper

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="LabSaaS API",
    description="Multi-tenant lab management SaaS: plans, subscriptions and entitlements",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(TenantMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Add your frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(subscriptions_router)


@app.get("/")
async def read_root():
    return {
        "message": "LabSaaS API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("LabSaaS API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    # Create database tables (only for development - use migrations in production)
    if settings.ENVIRONMENT == "development":
        await create_tables()

    app.state.expiry_scheduler = None
    if settings.SUBSCRIPTION_SWEEP_MODE == "inprocess":
        scheduler = SubscriptionExpiryScheduler(
            ExpirySweeper(AsyncSessionLocal),
            cron=settings.SUBSCRIPTION_SWEEP_CRON,
            tz_name=settings.SUBSCRIPTION_SWEEP_TIMEZONE
        )
        scheduler.start()
        app.state.expiry_scheduler = scheduler
    else:
        logger.info(f"Subscription expiry sweep mode: {settings.SUBSCRIPTION_SWEEP_MODE}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("LabSaaS API shutting down...")
    scheduler = getattr(app.state, "expiry_scheduler", None)
    if scheduler is not None:
        await scheduler.stop()
    await async_engine.dispose()
