"""
Retention Scheduler for the schemasyncd daemon.

Runs retention cleanup for every database once per policy cleanup interval.
A tick that arrives while the previous cycle is still running is skipped and
recorded in the manager's cleanup history.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .retention_config import SchedulerSettings
from .retention_errors import ConfigurationError
from .retention_manager import ALL_DATABASES, RetentionManager
from .retention_models import CleanupReport, CleanupStatus, CleanupTrigger, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SchedulerStatus:
    """Status information for the scheduler."""
    running: bool
    last_cleanup: Optional[datetime]
    next_cleanup: Optional[datetime]
    total_cycles: int
    successful_cycles: int
    failed_cycles: int
    skipped_cycles: int
    last_error: Optional[str]
    uptime_seconds: float


class RetentionScheduler:
    """Periodic retention cleanup driven by ``policy.cleanup_interval``."""

    def __init__(
        self,
        retention_manager: RetentionManager,
        config: Optional[SchedulerSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        report_callback: Optional[Callable[[CleanupReport], None]] = None
    ):
        self.retention_manager = retention_manager
        self.config = config or SchedulerSettings()
        self.report_callback = report_callback
        self._clock = clock

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._start_time: Optional[datetime] = None
        self._last_cleanup: Optional[datetime] = None
        self._next_cleanup: Optional[datetime] = None
        self._total_cycles = 0
        self._successful_cycles = 0
        self._failed_cycles = 0
        self._skipped_cycles = 0
        self._last_error: Optional[str] = None

    @property
    def interval(self) -> timedelta:
        return self.retention_manager.policy.cleanup_interval

    def is_running(self) -> bool:
        return self._running

    def setup_signal_handlers(self):
        """Stop gracefully on SIGINT/SIGTERM. Must be called from a running loop."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            asyncio.ensure_future(self.stop())

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    async def start(self):
        """
        Start the scheduler loop.

        Raises:
            ConfigurationError: if the policy is invalid or the cleanup
                interval is not positive. The loop is not started.
        """
        if self._running:
            logger.warning("Retention scheduler is already running")
            return

        if not self.config.enabled:
            logger.info("Retention scheduler is disabled")
            return

        self.retention_manager.validate_retention_policy()
        if self.interval <= timedelta(0):
            raise ConfigurationError.single(
                "cleanup_interval", "cleanup interval must be positive to schedule cleanups",
                self.interval, operation="start_scheduler"
            )

        logger.info("Starting retention scheduler...")
        self._running = True
        self._start_time = self._clock()
        self._task = asyncio.create_task(self._scheduler_loop())

        logger.info(f"Retention scheduler started (interval: {self.interval}, dry_run: {self.config.dry_run})")

    async def stop(self):
        """Stop the loop and wait for an in-flight cleanup cycle to finish."""
        if not self._running:
            return

        logger.info("Stopping retention scheduler...")
        self._running = False
        self._next_cleanup = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._cycle_task is not None and not self._cycle_task.done():
            logger.info("Waiting for in-flight cleanup cycle to finish")
            await asyncio.wait({self._cycle_task})

        logger.info("Retention scheduler stopped")

    async def _scheduler_loop(self):
        """Main scheduler loop."""
        if self.config.run_on_start:
            self._tick()
        while self._running:
            self._next_cleanup = self._clock() + self.interval
            await asyncio.sleep(self.interval.total_seconds())
            self._tick()

    def _tick(self) -> Optional[asyncio.Task]:
        if self._cycle_task is not None and not self._cycle_task.done():
            self._skipped_cycles += 1
            self.retention_manager.record_skipped_run(ALL_DATABASES, "previous cleanup cycle still running")
            return None
        self._cycle_task = asyncio.create_task(self._run_cleanup_cycle())
        return self._cycle_task

    async def _run_cleanup_cycle(self) -> Dict[str, CleanupReport]:
        """Run a complete cleanup cycle. Errors are recorded, never raised."""
        cycle_start = self._clock()
        self._total_cycles += 1
        logger.info("Starting retention cleanup cycle")

        try:
            reports = await self.retention_manager.apply_retention_policy_to_all(
                dry_run=self.config.dry_run,
                trigger=CleanupTrigger.SCHEDULED
            )
        except Exception as e:
            logger.error(f"Cleanup cycle failed: {e}")
            self._failed_cycles += 1
            self._last_error = str(e)
            return {}

        incomplete = [r for r in reports.values() if r.status != CleanupStatus.COMPLETED]
        if incomplete:
            self._failed_cycles += 1
            self._last_error = f"{len(incomplete)} database cleanups did not complete"
        else:
            self._successful_cycles += 1
            self._last_error = None
        self._last_cleanup = cycle_start

        if self.report_callback is not None:
            for report in reports.values():
                try:
                    self.report_callback(report)
                except Exception as e:
                    logger.error(f"Report callback failed for {report.database_name}: {e}")

        total_deleted = sum(len(r.deleted_ids) for r in reports.values())
        total_freed = sum(r.bytes_reclaimed for r in reports.values())
        duration = (self._clock() - cycle_start).total_seconds()
        logger.info(f"Cleanup cycle completed: {len(reports)} databases, "
                    f"{total_deleted} backups deleted, {total_freed / 1024 / 1024:.2f} MB freed, "
                    f"{duration:.2f}s duration")
        return reports

    async def run_once(self) -> Dict[str, CleanupReport]:
        """Run a cleanup cycle now. Returns {} if a cycle is already running."""
        task = self._tick()
        if task is None:
            return {}
        return await task

    def get_status(self) -> SchedulerStatus:
        """Get current scheduler status."""
        uptime = 0.0
        if self._start_time and self._running:
            uptime = (self._clock() - self._start_time).total_seconds()

        return SchedulerStatus(
            running=self._running,
            last_cleanup=self._last_cleanup,
            next_cleanup=self._next_cleanup if self._running else None,
            total_cycles=self._total_cycles,
            successful_cycles=self._successful_cycles,
            failed_cycles=self._failed_cycles,
            skipped_cycles=self._skipped_cycles,
            last_error=self._last_error,
            uptime_seconds=uptime
        )
