"""
Database models for reservoir monitoring
Sites, water level readings, maintenance, recipients, alerts and notification tracking
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, Text, ForeignKey, Enum, Index
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from aquaflow.models.schemas import (
    SiteStatus, ReadingSource, AlertType, AlertLevel,
    MaintenanceStatus, UserRole, NotificationChannel, DeliveryStatus
)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls, name: str) -> Enum:
    # Stored as VARCHAR with a CHECK constraint; unknown strings are rejected on write
    return Enum(enum_cls, name=name, native_enum=False, validate_strings=True, length=30)


class User(Base):
    """
    Platform users - admins and sector managers receive alert notifications
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(200), nullable=True, unique=True)
    phone = Column(String(50), nullable=True)
    role = Column(_enum(UserRole, "user_role"), nullable=False, default=UserRole.VIEWER)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Site(Base):
    """
    Reservoir sites - capacity and current fill level
    """
    __tablename__ = "sites"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    reservoir_capacity = Column(Float, nullable=False)
    current_level = Column(Float, nullable=False, default=0.0)
    status = Column(_enum(SiteStatus, "site_status"), nullable=False, default=SiteStatus.ACTIVE, index=True)
    sector_manager_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    last_refill = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Household(Base):
    """
    Households served by a site - notified about alerts on their site
    """
    __tablename__ = "households"

    id = Column(Integer, primary_key=True, index=True)
    site_id = Column(Integer, ForeignKey("sites.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    contact = Column(String(50), nullable=True)  # phone number, local or E.164
    email = Column(String(200), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class WaterLevel(Base):
    """
    Water level readings - append-only history per site
    """
    __tablename__ = "water_levels"
    __table_args__ = (
        Index("ix_water_levels_site_timestamp", "site_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    site_id = Column(Integer, ForeignKey("sites.id"), nullable=False)
    level = Column(Float, nullable=False)
    source = Column(_enum(ReadingSource, "reading_source"), nullable=False, default=ReadingSource.SENSOR)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Maintenance(Base):
    """
    Maintenance operations planned or performed on a site
    """
    __tablename__ = "maintenances"

    id = Column(Integer, primary_key=True, index=True)
    site_id = Column(Integer, ForeignKey("sites.id"), nullable=False, index=True)
    status = Column(_enum(MaintenanceStatus, "maintenance_status"), nullable=False, default=MaintenanceStatus.SCHEDULED)
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    description = Column(Text, nullable=True)


class Alert(Base):
    """
    Alerts raised on a site - at most one active alert per (site, type)
    """
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, index=True)
    site_id = Column(Integer, ForeignKey("sites.id"), nullable=False)

    # Alert classification
    type = Column(_enum(AlertType, "alert_type"), nullable=False)
    level = Column(_enum(AlertLevel, "alert_level"), nullable=False)
    message = Column(Text, nullable=False)

    # Status tracking
    is_active = Column(Boolean, nullable=False, default=True)
    action_taken = Column(Text, nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_alerts_site_type", "site_id", "type"),
        Index(
            "uq_alerts_active_site_type", "site_id", "type",
            unique=True,
            postgresql_where=is_active.is_(True),
            sqlite_where=is_active.is_(True),
        ),
    )


class AlertNotification(Base):
    """
    Alert notifications table - tracks notification delivery
    """
    __tablename__ = "alert_notifications"

    id = Column(Integer, primary_key=True, index=True)
    alert_id = Column(Integer, ForeignKey("alerts.id"), nullable=False, index=True)

    # Notification details
    channel = Column(_enum(NotificationChannel, "notification_channel"), nullable=False)
    recipient = Column(String(500), nullable=False)

    # Delivery tracking
    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    delivery_status = Column(_enum(DeliveryStatus, "delivery_status"), nullable=False)
    error = Column(Text, nullable=True)

    # Content
    message_body = Column(Text, nullable=True)
