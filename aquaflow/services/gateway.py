"""
Data Store Gateway - read/write access for the monitoring core
Sites with their latest reading, alerts, maintenance and notification recipients
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from sqlalchemy import select, update, func, and_, desc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from aquaflow.core.exceptions import (
    AlertNotFoundError, DataStoreError, DuplicateAlertError, SiteNotFoundError
)
from aquaflow.models.models import (
    Alert, AlertNotification, Household, Maintenance, Site, User, WaterLevel, utcnow
)
from aquaflow.models.schemas import (
    AlertLevel, AlertType, DeliveryStatus, MaintenanceStatus, NotificationChannel,
    SiteStatus, UserRole
)

logger = logging.getLogger(__name__)


@dataclass
class SiteSnapshot:
    """A site together with its most recent water level reading"""
    site: Site
    latest_reading: Optional[WaterLevel] = None


@dataclass
class Recipients:
    """People to notify about an alert on one site"""
    admins: List[User] = field(default_factory=list)
    sector_manager: Optional[User] = None
    households: List[Household] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.admins and self.sector_manager is None and not self.households


@dataclass
class DeliveryRecord:
    """One notification attempt, as written to the delivery log"""
    channel: NotificationChannel
    recipient: str
    status: DeliveryStatus
    message_body: Optional[str] = None
    error: Optional[str] = None


class DataStoreGateway:
    """
    SQLAlchemy-backed data access for the monitoring core

    Every call opens its own session so concurrent site checks never
    share one. SQLAlchemy errors surface as DataStoreError.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ==================== SITES ====================

    async def list_sites(self, status: Optional[SiteStatus] = None) -> List[SiteSnapshot]:
        """List sites (optionally filtered by status) with their latest reading attached"""
        try:
            async with self.session_factory() as session:
                query = select(Site).order_by(Site.id)
                if status:
                    query = query.where(Site.status == status)
                result = await session.execute(query)
                sites = result.scalars().all()
                if not sites:
                    return []

                latest = (
                    select(
                        WaterLevel.site_id,
                        func.max(WaterLevel.timestamp).label("latest_ts")
                    )
                    .where(WaterLevel.site_id.in_([s.id for s in sites]))
                    .group_by(WaterLevel.site_id)
                    .subquery()
                )
                readings_result = await session.execute(
                    select(WaterLevel).join(
                        latest,
                        and_(
                            WaterLevel.site_id == latest.c.site_id,
                            WaterLevel.timestamp == latest.c.latest_ts
                        )
                    )
                )
                readings: Dict[int, WaterLevel] = {}
                for reading in readings_result.scalars().all():
                    readings[reading.site_id] = reading

                return [SiteSnapshot(site=s, latest_reading=readings.get(s.id)) for s in sites]
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to list sites: {e}") from e

    async def get_site(self, site_id: int) -> Optional[Site]:
        """Get site by ID"""
        try:
            async with self.session_factory() as session:
                return await session.get(Site, site_id)
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to load site {site_id}: {e}") from e

    # ==================== ALERTS ====================

    async def find_active_alert(self, site_id: int, alert_type: AlertType) -> Optional[Alert]:
        """Get the active alert of a given type for a site, if any"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Alert).where(
                        and_(
                            Alert.site_id == site_id,
                            Alert.type == alert_type,
                            Alert.is_active.is_(True)
                        )
                    ).limit(1)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to look up active alert for site {site_id}: {e}") from e

    async def create_alert(
        self,
        site_id: int,
        alert_type: AlertType,
        level: AlertLevel,
        message: str,
        created_by_id: Optional[int] = None
    ) -> Alert:
        """
        Persist a new active alert

        Raises DuplicateAlertError when the unique index on active
        (site_id, type) rejects the row, DataStoreError for any other
        constraint (unknown site or creator).
        """
        now = utcnow()
        new_alert = Alert(
            site_id=site_id,
            type=alert_type,
            level=level,
            message=message,
            is_active=True,
            created_by_id=created_by_id,
            created_at=now,
            updated_at=now
        )
        try:
            async with self.session_factory() as session:
                session.add(new_alert)
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    # Only a competing active alert means duplicate; FK failures are errors
                    result = await session.execute(
                        select(Alert.id).where(
                            and_(
                                Alert.site_id == site_id,
                                Alert.type == alert_type,
                                Alert.is_active.is_(True)
                            )
                        ).limit(1)
                    )
                    existing_id = result.scalar_one_or_none()
                    if existing_id is not None:
                        raise DuplicateAlertError(site_id, alert_type.value, existing_id) from e
                    raise DataStoreError(f"Failed to create alert for site {site_id}: {e.orig}") from e
                await session.refresh(new_alert)
                return new_alert
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to create alert for site {site_id}: {e}") from e

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        """Get alert by ID"""
        try:
            async with self.session_factory() as session:
                return await session.get(Alert, alert_id)
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to load alert {alert_id}: {e}") from e

    async def list_alerts(
        self,
        site_id: Optional[int] = None,
        active_only: bool = False,
        skip: int = 0,
        limit: int = 100
    ) -> List[Alert]:
        """List alerts, newest first"""
        query = select(Alert)
        filters = []
        if site_id is not None:
            filters.append(Alert.site_id == site_id)
        if active_only:
            filters.append(Alert.is_active.is_(True))
        if filters:
            query = query.where(and_(*filters))
        query = query.order_by(desc(Alert.created_at), desc(Alert.id)).offset(skip).limit(limit)

        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to list alerts: {e}") from e

    async def resolve_alert(self, alert_id: int, action_taken: Optional[str] = None) -> Tuple[Alert, bool]:
        """
        Mark alert as resolved

        Returns (alert, changed). The update only matches an active row, so
        among concurrent callers exactly one sees changed=True; an already
        inactive alert comes back unchanged.
        """
        now = utcnow()
        values = {"is_active": False, "resolved_at": now, "updated_at": now}
        if action_taken:
            values["action_taken"] = action_taken

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Alert)
                    .where(and_(Alert.id == alert_id, Alert.is_active.is_(True)))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                changed = result.rowcount == 1
                await session.commit()

                alert = await session.get(Alert, alert_id)
                if not alert:
                    raise AlertNotFoundError(alert_id)
                return alert, changed
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to resolve alert {alert_id}: {e}") from e

    # ==================== MAINTENANCE ====================

    async def find_upcoming_scheduled_maintenance(
        self,
        site_id: int,
        within_days: int,
        now: Optional[datetime] = None
    ) -> Optional[Maintenance]:
        """Earliest SCHEDULED maintenance for the site due within the next `within_days` days"""
        horizon = (now or utcnow()) + timedelta(days=within_days)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Maintenance).where(
                        and_(
                            Maintenance.site_id == site_id,
                            Maintenance.status == MaintenanceStatus.SCHEDULED,
                            Maintenance.scheduled_at <= horizon
                        )
                    ).order_by(Maintenance.scheduled_at).limit(1)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to look up maintenance for site {site_id}: {e}") from e

    # ==================== RECIPIENTS ====================

    async def list_recipients(self, site_id: int) -> Recipients:
        """Admins, the site's sector manager and the site's active households"""
        try:
            async with self.session_factory() as session:
                site = await session.get(Site, site_id)
                if not site:
                    raise SiteNotFoundError(site_id)

                admins_result = await session.execute(
                    select(User).where(
                        and_(User.role == UserRole.ADMIN, User.is_active.is_(True))
                    ).order_by(User.id)
                )

                sector_manager = None
                if site.sector_manager_id is not None:
                    sector_manager = await session.get(User, site.sector_manager_id)
                    if sector_manager is not None and not sector_manager.is_active:
                        sector_manager = None

                households_result = await session.execute(
                    select(Household).where(
                        and_(Household.site_id == site_id, Household.is_active.is_(True))
                    ).order_by(Household.id)
                )

                return Recipients(
                    admins=list(admins_result.scalars().all()),
                    sector_manager=sector_manager,
                    households=list(households_result.scalars().all())
                )
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to resolve recipients for site {site_id}: {e}") from e

    # ==================== NOTIFICATION LOG ====================

    async def record_notifications(self, alert_id: int, records: Sequence[DeliveryRecord]) -> None:
        """Log notification attempts to database"""
        if not records:
            return
        try:
            async with self.session_factory() as session:
                session.add_all([
                    AlertNotification(
                        alert_id=alert_id,
                        channel=record.channel,
                        recipient=record.recipient,
                        delivery_status=record.status,
                        message_body=record.message_body,
                        error=record.error
                    )
                    for record in records
                ])
                await session.commit()
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to record notifications for alert {alert_id}: {e}") from e
