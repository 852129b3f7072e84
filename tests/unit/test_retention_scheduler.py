"""
Unit tests for the Retention Scheduler.

Tests start-up validation, periodic cycles, overlap skipping and
scheduler status reporting.
"""

import asyncio
import unittest
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from schemasyncd.storage.inventory import InMemoryBackupInventory
from schemasyncd.storage.retention_config import SchedulerSettings
from schemasyncd.storage.retention_errors import ConfigurationError
from schemasyncd.storage.retention_manager import RetentionManager
from schemasyncd.storage.retention_models import CleanupStatus, CleanupTrigger, RetentionPolicy
from schemasyncd.storage.retention_scheduler import RetentionScheduler, SchedulerStatus
from tests.utils.backups import make_backup


def make_scheduler(policy=None, backups=None, report_callback=None, **config):
    inventory = InMemoryBackupInventory(
        backups if backups is not None else [make_backup(f"b{i}", age=timedelta(days=i)) for i in range(4)]
    )
    manager = RetentionManager(inventory, policy or RetentionPolicy(max_backups=2))
    scheduler = RetentionScheduler(manager, SchedulerSettings(**config), report_callback=report_callback)
    return scheduler, manager, inventory


class TestSchedulerSettings(unittest.TestCase):
    """Test scheduler configuration functionality."""

    def test_defaults(self):
        config = SchedulerSettings()

        self.assertTrue(config.enabled)
        self.assertFalse(config.dry_run)
        self.assertFalse(config.run_on_start)

    def test_scheduler_defaults_to_enabled_settings(self):
        manager = RetentionManager(InMemoryBackupInventory(), RetentionPolicy(max_backups=2))

        scheduler = RetentionScheduler(manager)

        self.assertEqual(scheduler.config, SchedulerSettings())

    def test_initial_status(self):
        scheduler, _, _ = make_scheduler()

        status = scheduler.get_status()

        self.assertIsInstance(status, SchedulerStatus)
        self.assertFalse(status.running)
        self.assertIsNone(status.last_cleanup)
        self.assertIsNone(status.next_cleanup)
        self.assertEqual(status.total_cycles, 0)
        self.assertEqual(status.skipped_cycles, 0)


class TestSchedulerStart:
    """Test scheduler start-up."""

    @pytest.mark.asyncio
    async def test_invalid_policy_prevents_start(self):
        scheduler, _, _ = make_scheduler(policy=RetentionPolicy())

        with pytest.raises(ConfigurationError):
            await scheduler.start()

        assert not scheduler.is_running()

    @pytest.mark.asyncio
    async def test_zero_interval_prevents_start(self):
        scheduler, _, _ = make_scheduler(policy=RetentionPolicy(max_backups=2, cleanup_interval=timedelta(0)))

        with pytest.raises(ConfigurationError) as exc_info:
            await scheduler.start()

        assert exc_info.value.fields == ["cleanup_interval"]
        assert not scheduler.is_running()

    @pytest.mark.asyncio
    async def test_disabled_scheduler_does_not_start(self):
        scheduler, _, _ = make_scheduler(enabled=False)

        await scheduler.start()

        assert not scheduler.is_running()

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler, _, _ = make_scheduler()

        await scheduler.start()
        status = scheduler.get_status()
        assert status.running

        await scheduler.stop()
        assert not scheduler.get_status().running


class TestSchedulerCycles:
    """Test cleanup cycles."""

    @pytest.mark.asyncio
    async def test_run_once_cleans_every_database(self):
        scheduler, manager, inventory = make_scheduler()

        reports = await scheduler.run_once()

        assert list(reports) == ["orders"]
        assert reports["orders"].trigger == CleanupTrigger.SCHEDULED
        assert len(inventory) == 2
        status = scheduler.get_status()
        assert status.total_cycles == 1
        assert status.successful_cycles == 1
        assert status.last_cleanup is not None

    @pytest.mark.asyncio
    async def test_dry_run_cycles_do_not_delete(self):
        scheduler, _, inventory = make_scheduler(dry_run=True)

        reports = await scheduler.run_once()

        assert reports["orders"].dry_run
        assert len(inventory) == 4

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped_and_recorded(self):
        scheduler, manager, _ = make_scheduler()
        gate = asyncio.Event()
        apply_all = manager.apply_retention_policy_to_all

        async def slow_apply(**kwargs):
            await gate.wait()
            return await apply_all(**kwargs)

        manager.apply_retention_policy_to_all = slow_apply

        first = asyncio.create_task(scheduler.run_once())
        await asyncio.sleep(0)
        second = await scheduler.run_once()

        assert second == {}
        history = manager.get_cleanup_history()
        assert history[0].status == CleanupStatus.SKIPPED
        assert scheduler.get_status().skipped_cycles == 1

        gate.set()
        reports = await first
        assert "orders" in reports

    @pytest.mark.asyncio
    async def test_cycle_errors_are_recorded_not_raised(self):
        scheduler, manager, _ = make_scheduler()
        manager.apply_retention_policy_to_all = AsyncMock(side_effect=RuntimeError("catalog down"))

        reports = await scheduler.run_once()

        assert reports == {}
        status = scheduler.get_status()
        assert status.failed_cycles == 1
        assert status.last_error == "catalog down"

    @pytest.mark.asyncio
    async def test_loop_runs_cycles_each_interval(self):
        policy = RetentionPolicy(max_backups=2, cleanup_interval=timedelta(milliseconds=10))
        scheduler, _, inventory = make_scheduler(policy=policy)

        await scheduler.start()
        for _ in range(200):
            if scheduler.get_status().total_cycles >= 2:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert scheduler.get_status().total_cycles >= 2
        assert len(inventory) == 2

    @pytest.mark.asyncio
    async def test_run_on_start_runs_immediately(self):
        policy = RetentionPolicy(max_backups=2, cleanup_interval=timedelta(hours=1))
        scheduler, _, inventory = make_scheduler(policy=policy, run_on_start=True)

        await scheduler.start()
        for _ in range(100):
            if scheduler.get_status().total_cycles:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert len(inventory) == 2
        assert scheduler.get_status().successful_cycles == 1


class TestSchedulerReportCallback:
    """Test per-database report delivery after each cycle."""

    @pytest.mark.asyncio
    async def test_callback_receives_each_cycle_report(self):
        received = []
        backups = [make_backup(f"o{i}", age=timedelta(days=i)) for i in range(3)]
        backups += [make_backup(f"u{i}", age=timedelta(days=i), database="users") for i in range(3)]
        scheduler, _, _ = make_scheduler(backups=backups, report_callback=received.append)

        reports = await scheduler.run_once()

        assert [r.database_name for r in received] == ["orders", "users"]
        assert received == list(reports.values())
        assert all(len(r.deleted_ids) == 1 for r in received)

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_fail_the_cycle(self):
        def broken_callback(report):
            raise RuntimeError("sink unavailable")

        scheduler, _, inventory = make_scheduler(report_callback=broken_callback)

        reports = await scheduler.run_once()

        assert reports["orders"].status == CleanupStatus.COMPLETED
        assert len(inventory) == 2
        assert scheduler.get_status().successful_cycles == 1

    @pytest.mark.asyncio
    async def test_callback_not_called_when_cycle_fails(self):
        received = []
        scheduler, manager, _ = make_scheduler(report_callback=received.append)
        manager.apply_retention_policy_to_all = AsyncMock(side_effect=RuntimeError("catalog down"))

        await scheduler.run_once()

        assert received == []


if __name__ == '__main__':
    unittest.main()
