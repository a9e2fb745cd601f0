# aquaflow/main.py
from fastapi import FastAPI, HTTPException, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from aquaflow.core.config import settings
from aquaflow.api.v1.api import api_router
from aquaflow.db.database import get_db, get_engine, get_session_factory
from aquaflow.services.alert_service import AlertService
from aquaflow.services.gateway import DataStoreGateway
from aquaflow.services.monitoring_service import AlertMonitor
from aquaflow.services.notification_service import NotificationService

# Configure logging based on settings
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_services(app: FastAPI) -> None:
    """Wire the monitoring core and attach it to app.state"""
    gateway = DataStoreGateway(get_session_factory())
    notifications = NotificationService(gateway)
    alert_service = AlertService(gateway, notifications)

    app.state.gateway = gateway
    app.state.notifications = notifications
    app.state.alert_service = alert_service
    app.state.monitor = AlertMonitor(gateway, alert_service)


# --- Lifespan Events ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events: startup and shutdown."""
    logger.info("Starting AquaFlow monitoring backend...")

    build_services(app)

    if settings.MONITORING_ENABLED:
        # The first sweep runs in the background; startup does not wait for it
        app.state.monitor.start()
    else:
        logger.warning("Alert monitoring disabled by configuration")

    logger.info("Application startup complete")
    yield

    # --- Shutdown ---
    logger.info("Shutting down AquaFlow monitoring backend...")
    await app.state.monitor.stop()
    app.state.notifications.close()
    await get_engine().dispose()


# --- Create FastAPI App ---
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Reservoir level monitoring with alerting and notification fan-out",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# --- Configure CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["*"],
)

# --- Include API Routes ---
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Health check endpoint that verifies database connectivity."""
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service unhealthy: Database connection failed - {str(e)}"
        )
    return {
        "status": "healthy",
        "database": "connected",
        "app_name": settings.APP_NAME,
        "environment": settings.ENVIRONMENT,
    }


# --- Main Execution Block ---
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "aquaflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info" if settings.DEBUG else "warning"
    )
