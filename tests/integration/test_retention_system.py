"""
Integration tests for the backup retention system.

Tests the complete workflow against an on-disk backup tree: evaluation,
cleanup, audit trail, metrics, storage monitoring and the CLI.
"""

import tempfile
from datetime import timedelta
from pathlib import Path

import pytest
import yaml

from schemasyncd.storage.inventory import LocalBackupInventory
from schemasyncd.storage.retention_cli import main as cli_main
from schemasyncd.storage.retention_config import QuotaConfig
from schemasyncd.storage.retention_logging import CleanupAuditLog
from schemasyncd.storage.retention_manager import RetentionManager, create_retention_manager
from schemasyncd.storage.retention_metrics import RetentionMetrics
from schemasyncd.storage.retention_models import (
    BackupStatus, CleanupStatus, CompressionAlgorithm, ReasonCode, RetentionPolicy, utc_now
)
from schemasyncd.storage.retention_monitoring import AlertCode, HealthStatus, StorageMonitor
from tests.utils.backups import NOW, fixed_clock, make_backup, write_local_backup


@pytest.fixture
def backup_root():
    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir)
        for i in range(6):
            write_local_backup(root / "backups", make_backup(f"orders-{i}", age=timedelta(days=i), size=2000))
        write_local_backup(root / "backups", make_backup("users-0", database="users", size=500))
        write_local_backup(
            root / "backups",
            make_backup("users-1", database="users", age=timedelta(days=1), size=500,
                        algorithm=CompressionAlgorithm.NONE, compressed=500)
        )
        yield root


class TestRetentionSystemIntegration:
    """Integration tests for the complete retention system."""

    @pytest.mark.asyncio
    async def test_complete_retention_workflow(self, backup_root):
        inventory = LocalBackupInventory(str(backup_root / "backups"))
        audit_log = CleanupAuditLog(str(backup_root / "logs"))
        metrics = RetentionMetrics()
        manager = RetentionManager(
            inventory, RetentionPolicy(max_backups=3), audit_log=audit_log, metrics=metrics, clock=fixed_clock()
        )

        preview = await manager.get_cleanup_report("orders", dry_run=True)
        assert [d.backup_id for d in preview.to_delete] == ["orders-3", "orders-4", "orders-5"]
        assert all(d.reasons == frozenset({ReasonCode.EXCEEDS_MAX_COUNT}) for d in preview.to_delete)
        assert len(await inventory.list_backups("orders")) == 6

        reports = await manager.apply_retention_policy_to_all(dry_run=False)

        assert set(reports) == {"orders", "users"}
        orders = reports["orders"]
        assert orders.status == CleanupStatus.COMPLETED
        assert orders.deleted_ids == ["orders-5", "orders-4", "orders-3"]
        assert orders.bytes_reclaimed == 6000
        assert reports["users"].deleted_ids == []
        remaining = sorted(b.id for b in await inventory.list_backups())
        assert remaining == ["orders-0", "orders-1", "orders-2", "users-0", "users-1"]
        for backup_id in ("orders-3", "orders-4", "orders-5"):
            assert not (backup_root / "backups" / "orders" / backup_id).exists()

        entries = audit_log.read_entries(NOW)
        assert [e["database_name"] for e in entries] == ["orders", "users"]
        assert entries[0]["bytes_reclaimed"] == 6000

        assert metrics.registry.get_sample_value(
            'backup_cleanup_deleted_total', {'database': 'orders'}
        ) == 3
        assert metrics.registry.get_sample_value(
            'backup_cleanup_runs_total', {'trigger': 'manual', 'status': 'completed', 'dry_run': 'true'}
        ) == 1

        second = await manager.get_cleanup_report("orders", dry_run=False)
        assert second.deleted_ids == []
        assert [r.database_name for r in manager.get_cleanup_history()] == ["orders", "users", "orders"]

    @pytest.mark.asyncio
    async def test_retention_report_recommends_policy_for_untouched_database(self, backup_root):
        manager = create_retention_manager(
            LocalBackupInventory(str(backup_root / "backups")), RetentionPolicy(max_backups=3)
        )

        report = await manager.get_retention_report()

        assert report.total_backups == 8
        assert report.storage_usage == 13000
        assert report.estimated_savings == 6000
        assert report.databases["orders"].to_delete == 3
        assert list(report.recommended_policies) == ["users"]
        assert report.recommended_policies["users"].max_backups == 15

    @pytest.mark.asyncio
    async def test_storage_monitoring_integration(self, backup_root):
        inventory = LocalBackupInventory(str(backup_root / "backups"))
        monitor = StorageMonitor(
            inventory,
            quota=QuotaConfig(max_total_bytes=13000, per_database_bytes={"users": 2000}),
            clock=fixed_clock(NOW + timedelta(days=8))
        )

        usage = await monitor.get_storage_usage()
        assert usage.total_backups == 8
        assert usage.by_database["users"].total_bytes == 1000

        checks = await monitor.check_storage_quotas()
        assert [(c.scope, c.percent_used) for c in checks] == [("total", 100.0), ("users", 50.0)]

        health = await monitor.get_storage_health_summary()
        assert health.overall_status == HealthStatus.CRITICAL

        alerts = await monitor.generate_storage_alerts()
        codes = {a.code for a in alerts}
        assert AlertCode.QUOTA_NEAR_LIMIT in codes
        assert AlertCode.STALE_LOW_COMPRESSION in codes

        optimization = await monitor.get_storage_optimization_recommendations()
        assert optimization.compression_analysis.uncompressed_backup_ids == ("users-1",)

    @pytest.mark.asyncio
    async def test_corrupted_backup_on_disk_is_reported(self, backup_root):
        write_local_backup(
            backup_root / "backups", make_backup("orders-bad", status=BackupStatus.CORRUPTED)
        )
        monitor = StorageMonitor(LocalBackupInventory(str(backup_root / "backups")), clock=fixed_clock())

        alerts = await monitor.generate_storage_alerts()

        assert alerts[0].code == AlertCode.CORRUPTED_BACKUP
        assert alerts[0].related_backup_ids == ("orders-bad",)


class TestRetentionCli:
    """Run the command-line interface against a real backup tree."""

    @pytest.fixture
    def config_path(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            now = utc_now()
            for i in range(5):
                write_local_backup(
                    root / "backups", make_backup(f"orders-{i}", created_at=now - timedelta(days=i))
                )
            config = {
                "retention": {"max_backups": 2, "cleanup_interval": "1h"},
                "storage": {"provider": "local", "base_path": str(root / "backups")},
                "audit_log_dir": str(root / "logs"),
            }
            path = root / "backup.yaml"
            with open(path, 'w') as f:
                yaml.safe_dump(config, f)
            yield path

    def test_dry_run_cleanup_keeps_backups(self, config_path, capsys):
        assert cli_main(["--config", str(config_path), "cleanup", "--dry-run", "--show-decisions"]) == 0

        output = capsys.readouterr().out
        assert "[DRY RUN] orders: 3 to delete, 2 retained" in output
        assert "delete orders-4 (exceedsMaxCount)" in output
        assert len(list((config_path.parent / "backups" / "orders").iterdir())) == 5

    def test_cleanup_deletes_and_records_history(self, config_path, capsys):
        assert cli_main(["--config", str(config_path), "cleanup"]) == 0
        assert len(list((config_path.parent / "backups" / "orders").iterdir())) == 2

        assert cli_main(["--config", str(config_path), "history"]) == 0
        output = capsys.readouterr().out
        assert "Deleted 3 backups" in output
        assert "orders completed deleted=3" in output

    def test_policy_command(self, config_path, capsys):
        assert cli_main(["--config", str(config_path), "policy"]) == 0

        output = capsys.readouterr().out
        assert "Retention policy: max_backups=2" in output
        assert "Cleanup interval: 1h" in output

    def test_invalid_policy_exits_with_configuration_error(self, config_path, capsys):
        with open(config_path) as f:
            config = yaml.safe_load(f)
        config["retention"]["max_backups"] = 0
        with open(config_path, 'w') as f:
            yaml.safe_dump(config, f)

        assert cli_main(["--config", str(config_path), "policy"]) == 2
        assert "at least one retention policy must be configured" in capsys.readouterr().out

    def test_cloud_provider_is_rejected(self, config_path, capsys):
        with open(config_path, 'w') as f:
            yaml.safe_dump({"storage": {"provider": "s3", "bucket": "b", "region": "r"}}, f)

        assert cli_main(["--config", str(config_path), "storage"]) == 2
        assert "storage.provider" in capsys.readouterr().out

    def test_init_config(self, config_path, capsys):
        target = config_path.parent / "new" / "backup.yaml"

        assert cli_main(["--config", str(target), "init-config"]) == 0
        assert cli_main(["--config", str(target), "init-config"]) == 1
        assert yaml.safe_load(target.read_text())["retention"]["max_backups"] == 10
