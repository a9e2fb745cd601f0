"""
Alert API Endpoints
Manual alerts, resolution and alert listing
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from typing import Optional, List

from aquaflow.core.exceptions import AlertNotFoundError, DuplicateAlertError, SiteNotFoundError
from aquaflow.models.schemas import AlertCreate, AlertResolve, AlertResponse
from aquaflow.services.alert_service import AlertService

router = APIRouter()


def get_alert_service(request: Request) -> AlertService:
    """Dependency injection for AlertService (built in the application lifespan)"""
    return request.app.state.alert_service


@router.get("/", response_model=List[AlertResponse])
async def list_alerts(
    site_id: Optional[int] = Query(None, description="Filter by site"),
    active_only: bool = Query(False, description="Return only active alerts"),
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Number of records to return"),
    service: AlertService = Depends(get_alert_service)
):
    """
    List alerts, newest first
    """
    return await service.list_alerts(site_id=site_id, active_only=active_only, skip=skip, limit=limit)


@router.post("/", response_model=AlertResponse, status_code=status.HTTP_201_CREATED)
async def create_alert(
    alert_data: AlertCreate,
    service: AlertService = Depends(get_alert_service)
):
    """
    Create a manual alert

    - **site_id**: Site the alert belongs to
    - **type**: LOW_WATER_LEVEL, SENSOR_FAILURE, MAINTENANCE_DUE, PUMP_FAILURE, LEAK_DETECTED, ...
    - **level**: INFO, WARNING, CRITICAL, EMERGENCY
    """
    try:
        return await service.create_manual_alert(
            site_id=alert_data.site_id,
            alert_type=alert_data.type,
            message=alert_data.message,
            level=alert_data.level,
            created_by_id=alert_data.created_by_id
        )
    except SiteNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DuplicateAlertError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/{alert_id}", response_model=AlertResponse)
async def get_alert(
    alert_id: int,
    service: AlertService = Depends(get_alert_service)
):
    """
    Get a specific alert by ID
    """
    alert = await service.get_alert(alert_id)
    if not alert:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Alert with ID {alert_id} not found"
        )
    return alert


@router.post("/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: int,
    resolution: Optional[AlertResolve] = None,
    service: AlertService = Depends(get_alert_service)
):
    """
    Mark an alert as resolved and notify recipients
    """
    try:
        return await service.resolve_alert(
            alert_id,
            action_taken=resolution.action_taken if resolution else None
        )
    except AlertNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
