"""
Monitoring API Endpoints
Inspect the alert monitor and trigger a sweep on demand
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status

from aquaflow.models.schemas import MonitorStatus, SweepReportResponse
from aquaflow.services.monitoring_service import AlertMonitor

router = APIRouter()


def get_monitor(request: Request) -> AlertMonitor:
    return request.app.state.monitor


@router.get("/status", response_model=MonitorStatus)
async def monitoring_status(monitor: AlertMonitor = Depends(get_monitor)):
    """Monitor state and the outcome of the last sweep"""
    report = monitor.last_report
    return MonitorStatus(
        running=monitor.is_running,
        sweep_in_progress=monitor.sweep_in_progress,
        interval_seconds=monitor.interval_seconds,
        evaluators=[evaluator.__name__ for evaluator in monitor.evaluators],
        last_report=SweepReportResponse.model_validate(report) if report else None
    )


@router.post("/sweep", response_model=SweepReportResponse)
async def trigger_sweep(monitor: AlertMonitor = Depends(get_monitor)):
    """
    Run a sweep immediately

    Returns 409 when a sweep is already in progress.
    """
    report = await monitor.run_sweep()
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A monitoring sweep is already in progress"
        )
    return SweepReportResponse.model_validate(report)
