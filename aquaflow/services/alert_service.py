"""
Alert Service - Business logic for raising and resolving alerts
Handles deduplication against active alerts, persistence and notification hand-off
"""
from typing import Any, Dict, List, Optional
import logging

from aquaflow.core.exceptions import DuplicateAlertError, SiteNotFoundError
from aquaflow.models.models import Alert, Site
from aquaflow.models.schemas import AlertLevel, AlertType
from aquaflow.services.evaluators import AlertVerdict
from aquaflow.services.gateway import DataStoreGateway
from aquaflow.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

RESOLVED_PREFIX = "ALERT RESOLVED"


def resolution_message(alert: Alert) -> str:
    """Message announcing that an alert was resolved"""
    action = alert.action_taken or "Not specified"
    return f"{RESOLVED_PREFIX}: {alert.message}\nAction taken: {action}"


class AlertService:
    """
    Service class for alert operations

    At most one active alert exists per (site, type): a new alert is only
    written when no active one is found, and the database unique index
    catches concurrent writers.
    """

    def __init__(self, gateway: DataStoreGateway, notifications: NotificationService):
        self.gateway = gateway
        self.notifications = notifications

    async def raise_alert(self, site: Site, verdict: AlertVerdict, notify: bool = True) -> Optional[Alert]:
        """
        Persist and announce an evaluator verdict

        Returns the new alert, or None when an equivalent alert is
        already active. With notify=False the caller announces it later.
        """
        existing = await self.gateway.find_active_alert(site.id, verdict.type)
        if existing:
            logger.debug(f"Active {verdict.type.value} alert {existing.id} already open for site {site.id}")
            return None

        try:
            alert = await self.gateway.create_alert(site.id, verdict.type, verdict.level, verdict.message)
        except DuplicateAlertError:
            logger.info(f"Concurrent {verdict.type.value} alert for site {site.id} detected, skipping")
            return None

        logger.info(f"Created {verdict.level.value} {verdict.type.value} alert {alert.id} for site {site.name}")
        if notify:
            await self.announce(alert, site)
        return alert

    async def create_manual_alert(
        self,
        site_id: int,
        alert_type: AlertType,
        message: str,
        level: AlertLevel = AlertLevel.INFO,
        created_by_id: Optional[int] = None
    ) -> Alert:
        """
        Create an alert outside the monitoring sweep

        Raises:
            SiteNotFoundError: unknown site
            DuplicateAlertError: an alert of this type is already active for the site
        """
        site = await self.gateway.get_site(site_id)
        if not site:
            raise SiteNotFoundError(site_id)

        existing = await self.gateway.find_active_alert(site_id, alert_type)
        if existing:
            raise DuplicateAlertError(site_id, alert_type.value, existing.id)

        alert = await self.gateway.create_alert(site_id, alert_type, level, message, created_by_id)
        logger.info(f"Manual {level.value} {alert_type.value} alert {alert.id} created for site {site_id}")

        await self.announce(alert, site)
        return alert

    async def announce(self, alert: Alert, site: Optional[Site] = None) -> Dict[str, Any]:
        """Fan a newly created alert out to its recipients"""
        return await self.notifications.notify(alert, site=site)

    async def resolve_alert(self, alert_id: int, action_taken: Optional[str] = None) -> Alert:
        """
        Mark alert as resolved and notify recipients

        Resolving an alert that is already inactive is a no-op.

        Raises:
            AlertNotFoundError: unknown alert
        """
        alert, changed = await self.gateway.resolve_alert(alert_id, action_taken)
        if not changed:
            logger.debug(f"Alert {alert_id} was already resolved")
            return alert

        logger.info(f"Alert {alert.id} resolved")
        await self.notifications.notify(alert, message=resolution_message(alert), resolved=True)
        return alert

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        """Get alert by ID"""
        return await self.gateway.get_alert(alert_id)

    async def list_alerts(
        self,
        site_id: Optional[int] = None,
        active_only: bool = False,
        skip: int = 0,
        limit: int = 100
    ) -> List[Alert]:
        """List alerts with filtering and pagination"""
        return await self.gateway.list_alerts(site_id=site_id, active_only=active_only, skip=skip, limit=limit)
