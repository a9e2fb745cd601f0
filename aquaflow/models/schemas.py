"""
Enumerations and Pydantic schemas for the monitoring API
Handles request/response validation
"""
from pydantic import BaseModel, Field, validator
from typing import Optional, List
from datetime import datetime
from enum import Enum


# Enums for validation
class SiteStatus(str, Enum):
    ACTIVE = "ACTIVE"
    MAINTENANCE = "MAINTENANCE"
    EMERGENCY = "EMERGENCY"
    INACTIVE = "INACTIVE"


class ReadingSource(str, Enum):
    SENSOR = "SENSOR"
    MANUAL = "MANUAL"
    ESTIMATED = "ESTIMATED"


class AlertType(str, Enum):
    LOW_WATER_LEVEL = "LOW_WATER_LEVEL"
    SENSOR_FAILURE = "SENSOR_FAILURE"
    MAINTENANCE_DUE = "MAINTENANCE_DUE"
    PUMP_FAILURE = "PUMP_FAILURE"
    LEAK_DETECTED = "LEAK_DETECTED"
    WATER_QUALITY = "WATER_QUALITY"
    OTHER = "OTHER"


class AlertLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    EMERGENCY = "EMERGENCY"


class MaintenanceStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    SECTOR_MANAGER = "SECTOR_MANAGER"
    TECHNICIAN = "TECHNICIAN"
    VIEWER = "VIEWER"


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    WEBHOOK = "WEBHOOK"


class DeliveryStatus(str, Enum):
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# Alert Schemas
class AlertCreate(BaseModel):
    """Schema for creating a manual alert"""
    site_id: int
    type: AlertType
    level: AlertLevel = AlertLevel.INFO
    message: str = Field(..., min_length=1, max_length=1000)
    created_by_id: Optional[int] = None

    @validator('message')
    def strip_message(cls, v):
        """Reject blank messages"""
        v = v.strip()
        if not v:
            raise ValueError("Message must not be blank")
        return v


class AlertResolve(BaseModel):
    """Schema for resolving an alert"""
    action_taken: Optional[str] = Field(None, max_length=1000)


class AlertResponse(BaseModel):
    """Schema for alert responses"""
    id: int
    site_id: int
    type: AlertType
    level: AlertLevel
    message: str
    is_active: bool
    action_taken: Optional[str] = None
    created_by_id: Optional[int] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True  # For SQLAlchemy ORM compatibility


# Monitoring Schemas
class SweepReportResponse(BaseModel):
    """Outcome of one monitoring sweep"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    sites_checked: int = 0
    sites_failed: int = 0
    alerts_created: int = 0
    error: Optional[str] = None

    class Config:
        from_attributes = True


class MonitorStatus(BaseModel):
    """Current state of the alert monitor"""
    running: bool
    sweep_in_progress: bool
    interval_seconds: float
    evaluators: List[str]
    last_report: Optional[SweepReportResponse] = None
