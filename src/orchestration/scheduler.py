"""Governance Scheduler - APScheduler integration for risk housekeeping.

This module provides optional scheduling for the two periodic governance
tasks:
- Daily risk reset at a fixed UTC time
- Periodic exposure reconciliation against the venue

The risk core never starts threads on its own; a host process that wants
timed resets creates a GovernanceScheduler and starts it explicitly.
"""

from typing import Any, Callable, Dict, Optional

import pytz
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.utils.logging import get_logger

logger = get_logger(__name__)

# Daily boundaries are UTC calendar days
UTC_TZ = pytz.utc

DAILY_RESET_JOB = "daily_reset"
RECONCILE_JOB = "reconcile"


class GovernanceScheduler:
    """APScheduler wrapper for governance jobs.

    Example:
        >>> scheduler = GovernanceScheduler(config.section("scheduler"))
        >>> scheduler.schedule_daily_reset(
        ...     lambda: api.reset_daily(actor="scheduler"), hour=0, minute=0
        ... )
        >>> scheduler.schedule_reconciliation(api.reconcile, minutes=15)
        >>> scheduler.start()
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """Initialize governance scheduler.

        Args:
            config: Scheduler settings
                - max_instances: Max concurrent job instances (default: 1)
                - coalesce: Combine missed runs (default: True)
                - misfire_grace_time: Seconds a late job may still run (default: 60)
        """
        self.config = config or {}
        self.timezone = UTC_TZ

        self.scheduler = BackgroundScheduler(
            timezone=self.timezone,
            job_defaults={
                "coalesce": self.config.get("coalesce", True),
                "max_instances": self.config.get("max_instances", 1),
                "misfire_grace_time": self.config.get("misfire_grace_time", 60),
            },
        )
        self.last_results: Dict[str, Any] = {}
        self.failure_counts: Dict[str, int] = {}

        self.scheduler.add_listener(
            self._on_job_executed, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR
        )

        logger.info("GovernanceScheduler initialized (timezone: %s)", self.timezone)

    def schedule_daily_reset(
        self,
        func: Callable[[], Any],
        hour: int = 0,
        minute: int = 0,
    ):
        """Run ``func`` once a day at hour:minute UTC.

        Args:
            func: Typically ``lambda: api.reset_daily(actor="scheduler")``
            hour: UTC hour (0-23)
            minute: UTC minute (0-59)

        Returns:
            The APScheduler Job
        """
        if not 0 <= hour <= 23 or not 0 <= minute <= 59:
            raise ValueError(f"Invalid reset time {hour:02d}:{minute:02d}")

        trigger = CronTrigger(hour=hour, minute=minute, timezone=self.timezone)
        return self._add_job(DAILY_RESET_JOB, func, trigger)

    def schedule_reconciliation(self, func: Callable[[], Any], minutes: float = 15):
        """Run ``func`` every ``minutes`` minutes.

        Returns:
            The APScheduler Job
        """
        if minutes <= 0:
            raise ValueError(f"minutes must be positive, got {minutes}")

        trigger = IntervalTrigger(minutes=minutes, timezone=self.timezone)
        return self._add_job(RECONCILE_JOB, func, trigger)

    def _add_job(self, name: str, func: Callable[[], Any], trigger):
        # Pending jobs ignore replace_existing until start()
        if self.scheduler.get_job(name) is not None:
            self.scheduler.remove_job(name)

        job = self.scheduler.add_job(
            func=self._wrap(name, func),
            trigger=trigger,
            id=name,
            name=name,
            replace_existing=True,
        )
        logger.info("Registered job '%s' with trigger %s", name, trigger)
        return job

    def _wrap(self, name: str, func: Callable[[], Any]) -> Callable[[], Any]:
        """Wrap a job to record its result and log failures.

        Exceptions are re-raised so APScheduler reports them too.
        """

        def wrapped():
            try:
                logger.info("Executing job '%s'", name)
                result = func()
                self.last_results[name] = result
                logger.info("Job '%s' completed successfully", name)
                return result
            except Exception as e:
                self.failure_counts[name] = self.failure_counts.get(name, 0) + 1
                logger.error("Job '%s' failed: %s", name, e, exc_info=True)
                raise

        return wrapped

    def _on_job_executed(self, event):
        """Event listener for job execution/errors."""
        if event.exception:
            logger.error("Job '%s' raised exception: %s", event.job_id, event.exception)
        else:
            logger.debug("Job '%s' executed successfully", event.job_id)

    def start(self):
        """Start the scheduler (non-blocking)."""
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.start()
        logger.info("Scheduler started with %d job(s)", len(self.scheduler.get_jobs()))
        for job in self.scheduler.get_jobs():
            logger.info("  - %s: next run at %s", job.id, getattr(job, "next_run_time", "N/A"))

    def stop(self, wait: bool = True):
        """Stop the scheduler, by default waiting for running jobs."""
        if not self.scheduler.running:
            logger.warning("Scheduler not running")
            return

        logger.info("Shutting down scheduler...")
        self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_jobs(self) -> list:
        return self.scheduler.get_jobs()

    def remove_job(self, job_id: str):
        self.scheduler.remove_job(job_id)
        logger.info("Removed job '%s'", job_id)
