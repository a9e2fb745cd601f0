"""
Pytest configuration and fixtures for the monitoring core.
Provides an in-memory data store gateway, mocked channels and data factories.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from aquaflow.core.config import Settings
from aquaflow.core.exceptions import AlertNotFoundError, DataStoreError, DuplicateAlertError
from aquaflow.models.models import Alert, Household, Maintenance, Site, User, WaterLevel, utcnow
from aquaflow.models.schemas import (
    AlertLevel, AlertType, MaintenanceStatus, ReadingSource, SiteStatus, UserRole
)
from aquaflow.services.alert_service import AlertService
from aquaflow.services.gateway import DeliveryRecord, Recipients, SiteSnapshot
from aquaflow.services.monitoring_service import AlertMonitor
from aquaflow.services.notification_service import (
    EmailNotificationService, NotificationService, SMSNotificationService, WebhookNotificationService
)


class FakeGateway:
    """In-memory stand-in for DataStoreGateway"""

    def __init__(self):
        self.sites: Dict[int, Site] = {}
        self.readings: Dict[int, WaterLevel] = {}
        self.maintenances: Dict[int, Maintenance] = {}
        self.recipients: Dict[int, Recipients] = {}
        self.alerts: Dict[int, Alert] = {}
        self.notification_log: List[DeliveryRecord] = []
        self.failing_sites = set()
        self.list_sites_error: Optional[Exception] = None
        self._next_alert_id = 1

    # --- setup helpers ---
    def add_site(self, site: Site, reading: Optional[WaterLevel] = None) -> Site:
        self.sites[site.id] = site
        if reading is not None:
            self.readings[site.id] = reading
        return site

    # --- gateway interface ---
    async def list_sites(self, status: Optional[SiteStatus] = None) -> List[SiteSnapshot]:
        if self.list_sites_error is not None:
            raise self.list_sites_error
        return [
            SiteSnapshot(site=site, latest_reading=self.readings.get(site.id))
            for site in self.sites.values()
            if status is None or site.status == status
        ]

    async def get_site(self, site_id: int) -> Optional[Site]:
        return self.sites.get(site_id)

    async def find_active_alert(self, site_id: int, alert_type: AlertType) -> Optional[Alert]:
        if site_id in self.failing_sites:
            raise DataStoreError(f"connection lost while checking site {site_id}")
        for alert in self.alerts.values():
            if alert.site_id == site_id and alert.type == alert_type and alert.is_active:
                return alert
        return None

    async def create_alert(self, site_id, alert_type, level, message, created_by_id=None) -> Alert:
        for alert in self.alerts.values():
            if alert.site_id == site_id and alert.type == alert_type and alert.is_active:
                raise DuplicateAlertError(site_id, alert_type.value)
        now = utcnow()
        alert = Alert(
            id=self._next_alert_id,
            site_id=site_id,
            type=alert_type,
            level=level,
            message=message,
            is_active=True,
            created_by_id=created_by_id,
            created_at=now,
            updated_at=now
        )
        self.alerts[alert.id] = alert
        self._next_alert_id += 1
        return alert

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        return self.alerts.get(alert_id)

    async def list_alerts(self, site_id=None, active_only=False, skip=0, limit=100) -> List[Alert]:
        alerts = [
            a for a in sorted(self.alerts.values(), key=lambda a: a.id, reverse=True)
            if (site_id is None or a.site_id == site_id) and (not active_only or a.is_active)
        ]
        return alerts[skip:skip + limit]

    async def resolve_alert(self, alert_id: int, action_taken: Optional[str] = None) -> Tuple[Alert, bool]:
        alert = self.alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        if not alert.is_active:
            return alert, False
        alert.is_active = False
        alert.resolved_at = utcnow()
        if action_taken:
            alert.action_taken = action_taken
        return alert, True

    async def find_upcoming_scheduled_maintenance(self, site_id, within_days, now=None):
        if site_id in self.failing_sites:
            raise DataStoreError(f"connection lost while loading maintenance for site {site_id}")
        maintenance = self.maintenances.get(site_id)
        if maintenance is None or maintenance.status != MaintenanceStatus.SCHEDULED:
            return None
        if maintenance.scheduled_at > (now or utcnow()) + timedelta(days=within_days):
            return None
        return maintenance

    async def list_recipients(self, site_id: int) -> Recipients:
        return self.recipients.get(site_id, Recipients())

    async def record_notifications(self, alert_id: int, records) -> None:
        self.notification_log.extend(records)

    def active_alerts(self, site_id: int, alert_type: Optional[AlertType] = None) -> List[Alert]:
        return [
            a for a in self.alerts.values()
            if a.site_id == site_id and a.is_active and (alert_type is None or a.type == alert_type)
        ]


# Data factories

def make_site(site_id=1, capacity=1000.0, level=800.0, status=SiteStatus.ACTIVE, name=None, manager_id=None) -> Site:
    return Site(
        id=site_id,
        name=name or f"Reservoir {site_id}",
        reservoir_capacity=capacity,
        current_level=level,
        status=status,
        sector_manager_id=manager_id
    )


def make_reading(site_id=1, minutes_ago=5.0, level=800.0) -> WaterLevel:
    return WaterLevel(
        site_id=site_id,
        level=level,
        source=ReadingSource.SENSOR,
        timestamp=utcnow() - timedelta(minutes=minutes_ago)
    )


def make_maintenance(site_id=1, days_ahead=3.0, status=MaintenanceStatus.SCHEDULED) -> Maintenance:
    return Maintenance(
        site_id=site_id,
        status=status,
        scheduled_at=utcnow() + timedelta(days=days_ahead),
        description="Filter replacement"
    )


def make_user(user_id, email, role=UserRole.ADMIN) -> User:
    return User(id=user_id, name=f"User {user_id}", email=email, role=role, is_active=True)


def make_household(household_id, site_id=1, email=None, contact=None) -> Household:
    return Household(
        id=household_id, site_id=site_id, name=f"Household {household_id}",
        email=email, contact=contact, is_active=True
    )


# Fixtures

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        SMTP_USERNAME="alerts@aquaflow.test",
        SMTP_PASSWORD="secret",
        NOTIFICATION_TIMEOUT_SECONDS=2.0,
        NOTIFICATION_TIMEZONE="Africa/Kinshasa",
        MONITOR_INTERVAL_SECONDS=3600.0,
        MONITOR_SITE_TIMEOUT_SECONDS=5.0,
        MONITOR_MAX_CONCURRENT_SITES=3,
        MONITORING_ENABLED=False,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def email_service(test_settings) -> EmailNotificationService:
    """SMTP service whose transport is mocked"""
    service = EmailNotificationService(test_settings)
    service.send_email = MagicMock(return_value=True)
    return service


@pytest.fixture
def notification_service(gateway, email_service, test_settings) -> NotificationService:
    return NotificationService(
        gateway,
        email_service=email_service,
        sms_service=SMSNotificationService(test_settings),
        webhook_service=WebhookNotificationService(None),
        config=test_settings
    )


@pytest.fixture
def alert_service(gateway, notification_service) -> AlertService:
    return AlertService(gateway, notification_service)


@pytest.fixture
def monitor(gateway, alert_service, test_settings) -> AlertMonitor:
    return AlertMonitor(gateway, alert_service, config=test_settings)


@pytest.fixture
def staffed_site(gateway) -> Site:
    """Site 1 with an admin, a sector manager and a household"""
    site = gateway.add_site(make_site(site_id=1, manager_id=2), make_reading(site_id=1))
    gateway.recipients[1] = Recipients(
        admins=[make_user(1, "admin@aquaflow.test")],
        sector_manager=make_user(2, "manager@aquaflow.test", role=UserRole.SECTOR_MANAGER),
        households=[make_household(1, email="family@example.test")]
    )
    return site


def sent_addresses(email_service) -> List[str]:
    return [c.args[0] for c in email_service.send_email.call_args_list]


def ago(**kwargs) -> datetime:
    return utcnow() - timedelta(**kwargs)
