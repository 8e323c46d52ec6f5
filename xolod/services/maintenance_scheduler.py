"""Maintenance scheduler service for xolod.

Runs the periodic maintenance tasks with APScheduler.

Architecture:
- Uses APScheduler BackgroundScheduler; every job runs on a pool thread, so
  blocking calls to the remote services never touch the event loop
- Parses interval settings ("30m", "6h", "1d") and daily hours into triggers
- Jobs: nightly cleanup, expiration sweep, progress stream cleanup, idle
  lock cleanup, daily log rotation
- Lifecycle: start with daemon, stop on shutdown (or when shutdown-server
  is requested)
"""

import logging
import re
from collections.abc import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from xolo_library.config.settings import XoloSettings
from xolo_library.engines.maintenance import SERVER_ADMIN
from xolo_library.engines.maintenance import MaintenanceService
from xolo_library.progress.context import OperationContext

logger = logging.getLogger(__name__)

INTERVAL_RE = re.compile(r"^(\d+)([smhd])$")


class MaintenanceScheduler:
    """Schedules MaintenanceService tasks."""

    def __init__(self, maintenance: MaintenanceService, settings: XoloSettings) -> None:
        """Initialize maintenance scheduler.

        Args:
            maintenance: Service whose tasks are run
            settings: Source of the task intervals and hours
        """
        self.maintenance = maintenance
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Register every job and start the scheduler. Idempotent."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting maintenance scheduler")
        self._add_job("cleanup", self.run_cleanup, CronTrigger(hour=self.settings.cleanup_hour, timezone="UTC"))
        self._add_job(
            "expiration-sweep", self.maintenance.expiration_sweep, parse_interval(self.settings.expiration_sweep_interval)
        )
        self._add_job(
            "stream-cleanup", self.maintenance.cleanup_streams, parse_interval(self.settings.stream_cleanup_interval)
        )
        self._add_job("lock-cleanup", self.maintenance.cleanup_locks, parse_interval(self.settings.lock_cleanup_interval))
        self._add_job(
            "log-rotation", self.maintenance.rotate_logs, CronTrigger(hour=self.settings.log_rotation_hour, timezone="UTC")
        )

        self.scheduler.start()
        self._running = True
        logger.info("Maintenance scheduler started successfully")

    def stop(self) -> None:
        """Stop the scheduler, letting running jobs finish."""
        if not self._running:
            logger.warning("Scheduler not running")
            return

        logger.info("Stopping maintenance scheduler")
        self.scheduler.shutdown(wait=True)
        self._running = False
        logger.info("Maintenance scheduler stopped")

    def jobs(self) -> list[dict]:
        """Scheduled jobs and their next run times."""
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in self.scheduler.get_jobs()
        ]

    def run_cleanup(self) -> None:
        self.maintenance.cleanup(OperationContext(admin=SERVER_ADMIN))

    def _add_job(self, job_id: str, func: Callable[[], object], trigger: CronTrigger | IntervalTrigger) -> None:
        self.scheduler.add_job(
            func=self._guarded(job_id, func),
            trigger=trigger,
            id=job_id,
            name=f"Maintenance: {job_id}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled maintenance job '{job_id}' ({trigger})")

    def _guarded(self, job_id: str, func: Callable[[], object]) -> Callable[[], None]:
        """Wrap a job so a failure is logged and the next run still happens."""

        def run() -> None:
            logger.info(f"Running maintenance job '{job_id}'")
            try:
                func()
            except Exception:
                logger.exception(f"Maintenance job '{job_id}' failed")

        return run


def parse_interval(interval_str: str) -> IntervalTrigger:
    """Parse interval string into IntervalTrigger.

    Args:
        interval_str: Duration string (e.g., "30m", "2h", "1d")

    Returns:
        IntervalTrigger configured with interval

    Raises:
        ValueError: If the string isn't a number followed by s, m, h or d

    Example:
        "30m" -> Every 30 minutes
        "6h" -> Every 6 hours
    """
    match = INTERVAL_RE.match(interval_str)
    if not match:
        raise ValueError(f"Invalid interval format: {interval_str}")
    return IntervalTrigger(seconds=interval_to_seconds(int(match.group(1)), match.group(2)), timezone="UTC")


def interval_to_seconds(value: int, unit: str) -> int:
    """Convert interval notation to seconds."""
    if unit == "s":
        return value
    if unit == "m":
        return value * 60
    if unit == "h":
        return value * 3600
    if unit == "d":
        return value * 86400
    raise ValueError(f"Unknown interval unit: {unit}")
