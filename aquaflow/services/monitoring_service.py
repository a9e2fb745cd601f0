"""
Alert monitoring - periodic sweep over all sites

The monitor runs one sweep on start, then one sweep per interval. The next
tick is only scheduled once the current sweep has finished, and manual
sweeps are refused while one is in progress, so sweeps never overlap.
Every site is checked inside its own failure boundary.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple
import asyncio
import logging

from aquaflow.core.config import Settings, settings as app_settings
from aquaflow.models.models import Alert, utcnow
from aquaflow.models.schemas import SiteStatus
from aquaflow.services.alert_service import AlertService
from aquaflow.services.evaluators import (
    EVALUATORS, Evaluator, MonitoringThresholds, SiteContext, evaluate_site
)
from aquaflow.services.gateway import DataStoreGateway, SiteSnapshot

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Outcome of one sweep"""
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    sites_checked: int = 0
    sites_failed: int = 0
    alerts_created: int = 0
    error: Optional[str] = None


class AlertMonitor:
    """
    Owns the monitoring loop: start/stop lifecycle and the sweep itself
    """

    def __init__(
        self,
        gateway: DataStoreGateway,
        alert_service: AlertService,
        evaluators: Optional[List[Evaluator]] = None,
        thresholds: Optional[MonitoringThresholds] = None,
        config: Optional[Settings] = None
    ):
        config = config or app_settings
        self.gateway = gateway
        self.alert_service = alert_service
        self.evaluators = list(EVALUATORS if evaluators is None else evaluators)
        self.thresholds = thresholds or MonitoringThresholds.from_settings(config)
        self.interval_seconds = config.MONITOR_INTERVAL_SECONDS
        self.active_sites_only = config.MONITOR_ACTIVE_SITES_ONLY
        self.max_concurrent_sites = config.MONITOR_MAX_CONCURRENT_SITES
        self.site_timeout = config.MONITOR_SITE_TIMEOUT_SECONDS
        self.maintenance_lookahead_days = config.MAINTENANCE_LOOKAHEAD_DAYS

        self.last_report: Optional[SweepReport] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._sweep_in_progress = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def sweep_in_progress(self) -> bool:
        return self._sweep_in_progress

    def start(self) -> bool:
        """
        Start the monitoring loop (must be called from a running event loop)

        Returns False when the loop was already running.
        """
        if self.is_running:
            logger.debug("Alert monitor already running")
            return False

        logger.info(f"Starting alert monitoring (every {self.interval_seconds:g}s)")
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        return True

    async def stop(self) -> None:
        """
        Stop the loop; an in-flight sweep is allowed to finish

        Calling stop when not running does nothing.
        """
        if not self.is_running:
            return

        logger.info("Stopping alert monitoring")
        self._stop_event.set()
        await self._task
        self._task = None

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_sweep()
            except Exception:
                # run_sweep already isolates failures; the timer must survive anything else
                logger.exception("Unexpected error during monitoring sweep")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Alert monitoring stopped")

    async def run_sweep(self) -> Optional[SweepReport]:
        """
        Evaluate every site once

        Returns None without doing anything when a sweep is already running.
        """
        if self._sweep_in_progress:
            logger.warning("Previous sweep still running, skipping this one")
            return None

        self._sweep_in_progress = True
        report = SweepReport()
        try:
            status = SiteStatus.ACTIVE if self.active_sites_only else None
            try:
                snapshots = await self.gateway.list_sites(status)
            except Exception as e:
                logger.error(f"Sweep abandoned, could not list sites: {e}")
                report.error = str(e)
                return report

            logger.info(f"Sweep started for {len(snapshots)} sites")
            semaphore = asyncio.Semaphore(self.max_concurrent_sites)

            async def bounded(snapshot: SiteSnapshot) -> Tuple[List[Alert], bool]:
                async with semaphore:
                    return await self._check_site_isolated(snapshot)

            outcomes = await asyncio.gather(*(bounded(s) for s in snapshots))

            for created, succeeded in outcomes:
                report.alerts_created += len(created)
                if succeeded:
                    report.sites_checked += 1
                else:
                    report.sites_failed += 1

            logger.info(
                f"Sweep finished: {report.sites_checked} sites checked, "
                f"{report.sites_failed} failed, {report.alerts_created} alerts created"
            )
            return report
        finally:
            report.finished_at = utcnow()
            self.last_report = report
            self._sweep_in_progress = False

    async def _check_site_isolated(self, snapshot: SiteSnapshot) -> Tuple[List[Alert], bool]:
        """
        Failure boundary around one site

        Only evaluation and persistence count against the site timeout.
        Alerts stored before a failure are still announced afterwards.
        """
        site = snapshot.site
        created: List[Alert] = []
        succeeded = False
        try:
            await asyncio.wait_for(self.check_site(snapshot, created), timeout=self.site_timeout)
            succeeded = True
        except asyncio.TimeoutError:
            logger.error(f"Checks for site {site.id} timed out after {self.site_timeout:g}s")
        except Exception:
            logger.exception(f"Error checking alerts for site {site.id}")

        for alert in created:
            try:
                await self.alert_service.announce(alert, site)
            except Exception:
                logger.exception(f"Failed to announce alert {alert.id} for site {site.id}")
        return created, succeeded

    async def check_site(self, snapshot: SiteSnapshot, created: Optional[List[Alert]] = None) -> List[Alert]:
        """
        Run every evaluator for one site and store the resulting alerts

        New alerts are appended to `created` as soon as they are written and
        are not announced here.
        """
        site = snapshot.site
        created = [] if created is None else created
        now = utcnow()
        maintenance = await self.gateway.find_upcoming_scheduled_maintenance(
            site.id, self.maintenance_lookahead_days, now
        )
        context = SiteContext(
            site=site,
            latest_reading=snapshot.latest_reading,
            upcoming_maintenance=maintenance,
            now=now
        )

        for verdict in evaluate_site(context, self.thresholds, self.evaluators):
            alert = await self.alert_service.raise_alert(site, verdict, notify=False)
            if alert is not None:
                created.append(alert)
        return created
