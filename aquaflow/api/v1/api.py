from fastapi import APIRouter

from aquaflow.api.v1.endpoints import alerts, monitoring

api_router = APIRouter()

api_router.include_router(alerts.router, prefix="/alerts", tags=["alerts"])
api_router.include_router(monitoring.router, prefix="/monitoring", tags=["monitoring"])
