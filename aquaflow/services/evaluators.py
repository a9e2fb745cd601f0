"""
Rule evaluators - decide whether a site is in an alert condition

Each evaluator is a pure function of a SiteContext and the configured
thresholds, returning an AlertVerdict or None. Evaluators never touch
storage or send notifications. New checks are added with
@register_evaluator; the monitor runs them in registration order.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from aquaflow.core.config import Settings, settings as app_settings
from aquaflow.models.models import Maintenance, Site, WaterLevel, utcnow
from aquaflow.models.schemas import AlertLevel, AlertType, MaintenanceStatus


@dataclass(frozen=True)
class MonitoringThresholds:
    """Alert thresholds, percentages of reservoir capacity unless noted"""
    warning_pct: float = 30.0
    critical_pct: float = 20.0
    emergency_pct: Optional[float] = None
    sensor_staleness: timedelta = timedelta(minutes=30)
    maintenance_lookahead: timedelta = timedelta(days=7)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "MonitoringThresholds":
        config = config or app_settings
        return cls(
            warning_pct=config.LOW_WATER_WARNING_THRESHOLD,
            critical_pct=config.LOW_WATER_CRITICAL_THRESHOLD,
            emergency_pct=config.LOW_WATER_EMERGENCY_THRESHOLD,
            sensor_staleness=timedelta(minutes=config.SENSOR_STALENESS_MINUTES),
            maintenance_lookahead=timedelta(days=config.MAINTENANCE_LOOKAHEAD_DAYS),
        )


@dataclass
class SiteContext:
    """Everything an evaluator may look at for one site"""
    site: Site
    latest_reading: Optional[WaterLevel] = None
    upcoming_maintenance: Optional[Maintenance] = None
    now: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AlertVerdict:
    """An evaluator's decision that an alert condition exists"""
    type: AlertType
    level: AlertLevel
    message: str


Evaluator = Callable[[SiteContext, MonitoringThresholds], Optional[AlertVerdict]]

EVALUATORS: List[Evaluator] = []


def register_evaluator(func: Evaluator) -> Evaluator:
    """Add an evaluator to the default set run on every site"""
    EVALUATORS.append(func)
    return func


def _as_utc(value: datetime) -> datetime:
    # Some drivers (SQLite) hand back naive datetimes; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def fill_percentage(site: Site) -> Optional[float]:
    """Current fill level as a percentage, None when capacity is unusable"""
    capacity = site.reservoir_capacity
    if capacity is None or capacity <= 0 or site.current_level is None:
        return None
    return site.current_level / capacity * 100


@register_evaluator
def check_water_level(context: SiteContext, thresholds: MonitoringThresholds) -> Optional[AlertVerdict]:
    """LOW_WATER_LEVEL when the fill percentage drops to a threshold"""
    percentage = fill_percentage(context.site)
    if percentage is None:
        return None

    if thresholds.emergency_pct is not None and percentage <= thresholds.emergency_pct:
        return AlertVerdict(
            type=AlertType.LOW_WATER_LEVEL,
            level=AlertLevel.EMERGENCY,
            message=f"Emergency water level ({percentage:.1f}%)"
        )
    if percentage <= thresholds.critical_pct:
        return AlertVerdict(
            type=AlertType.LOW_WATER_LEVEL,
            level=AlertLevel.CRITICAL,
            message=f"Critical water level ({percentage:.1f}%)"
        )
    if percentage <= thresholds.warning_pct:
        return AlertVerdict(
            type=AlertType.LOW_WATER_LEVEL,
            level=AlertLevel.WARNING,
            message=f"Low water level ({percentage:.1f}%)"
        )
    return None


@register_evaluator
def check_sensors(context: SiteContext, thresholds: MonitoringThresholds) -> Optional[AlertVerdict]:
    """SENSOR_FAILURE when no reading arrived within the staleness window"""
    reading = context.latest_reading
    minutes = int(thresholds.sensor_staleness.total_seconds() // 60)

    if reading is None or reading.timestamp is None:
        detail = "no reading on record"
    elif _as_utc(context.now) - _as_utc(reading.timestamp) > thresholds.sensor_staleness:
        detail = f"no reading received in the last {minutes} minutes"
    else:
        return None

    return AlertVerdict(
        type=AlertType.SENSOR_FAILURE,
        level=AlertLevel.WARNING,
        message=f"Water level sensor malfunction: {detail}"
    )


@register_evaluator
def check_pumps(context: SiteContext, thresholds: MonitoringThresholds) -> Optional[AlertVerdict]:
    """PUMP_FAILURE - no pump telemetry is collected yet"""
    return None


@register_evaluator
def check_leaks(context: SiteContext, thresholds: MonitoringThresholds) -> Optional[AlertVerdict]:
    """LEAK_DETECTED - no flow telemetry is collected yet"""
    return None


@register_evaluator
def check_maintenance(context: SiteContext, thresholds: MonitoringThresholds) -> Optional[AlertVerdict]:
    """MAINTENANCE_DUE when scheduled maintenance falls inside the lookahead window"""
    maintenance = context.upcoming_maintenance
    if maintenance is None or maintenance.scheduled_at is None:
        return None
    if maintenance.status != MaintenanceStatus.SCHEDULED:
        return None

    scheduled_at = _as_utc(maintenance.scheduled_at)
    if scheduled_at > _as_utc(context.now) + thresholds.maintenance_lookahead:
        return None

    return AlertVerdict(
        type=AlertType.MAINTENANCE_DUE,
        level=AlertLevel.INFO,
        message=f"Maintenance scheduled for {scheduled_at.strftime('%d/%m/%Y')}"
    )


def evaluate_site(
    context: SiteContext,
    thresholds: MonitoringThresholds,
    evaluators: Optional[List[Evaluator]] = None
) -> List[AlertVerdict]:
    """Run evaluators in order and collect their verdicts"""
    verdicts = []
    for evaluator in (EVALUATORS if evaluators is None else evaluators):
        verdict = evaluator(context, thresholds)
        if verdict is not None:
            verdicts.append(verdict)
    return verdicts
