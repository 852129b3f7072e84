"""
Prometheus metrics for retention cleanup and storage monitoring.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from .retention_models import CleanupReport, DeletionStatus


class RetentionMetrics:
    """
    Counters and gauges shared by the retention manager, scheduler and monitor.

    Each instance owns its registry unless one is passed in, so several
    managers can coexist in one process (and in tests).
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        self.cleanup_runs_total = Counter(
            'backup_cleanup_runs_total',
            'Total number of cleanup runs',
            ['trigger', 'status', 'dry_run'],
            registry=self.registry
        )

        self.backups_deleted_total = Counter(
            'backup_cleanup_deleted_total',
            'Total number of backups deleted by retention cleanup',
            ['database'],
            registry=self.registry
        )

        self.deletion_failures_total = Counter(
            'backup_cleanup_deletion_failures_total',
            'Total number of failed backup deletions',
            ['database'],
            registry=self.registry
        )

        self.bytes_reclaimed_total = Counter(
            'backup_cleanup_bytes_reclaimed_total',
            'Total bytes reclaimed by retention cleanup',
            ['database'],
            registry=self.registry
        )

        self.skipped_runs_total = Counter(
            'backup_cleanup_skipped_runs_total',
            'Scheduled cleanup runs skipped because a previous run was still active',
            registry=self.registry
        )

        self.cleanup_duration = Histogram(
            'backup_cleanup_duration_seconds',
            'Time spent in a cleanup run',
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
            registry=self.registry
        )

        self.storage_bytes = Gauge(
            'backup_storage_bytes',
            'Stored backup bytes',
            ['database'],
            registry=self.registry
        )

        self.storage_backups = Gauge(
            'backup_storage_backups',
            'Number of stored backups',
            ['database'],
            registry=self.registry
        )

        self.quota_usage_ratio = Gauge(
            'backup_quota_usage_ratio',
            'Quota usage as used / limit',
            ['kind', 'scope'],
            registry=self.registry
        )

        self.alerts_generated_total = Counter(
            'backup_storage_alerts_generated_total',
            'Storage alerts generated',
            ['severity', 'code'],
            registry=self.registry
        )

    def record_cleanup(self, report: CleanupReport) -> None:
        self.cleanup_runs_total.labels(
            trigger=report.trigger.value,
            status=report.status.value,
            dry_run=str(report.dry_run).lower()
        ).inc()
        self.cleanup_duration.observe(report.duration_seconds)
        if report.dry_run:
            return

        deleted = [o for o in report.deletions if o.status == DeletionStatus.DELETED]
        failed = [o for o in report.deletions if o.status == DeletionStatus.FAILED]
        if deleted:
            self.backups_deleted_total.labels(database=report.database_name).inc(len(deleted))
            self.bytes_reclaimed_total.labels(database=report.database_name).inc(report.bytes_reclaimed)
        if failed:
            self.deletion_failures_total.labels(database=report.database_name).inc(len(failed))

    def record_skipped_run(self) -> None:
        self.skipped_runs_total.inc()

    def render(self) -> bytes:
        """Exposition-format snapshot of this registry."""
        return generate_latest(self.registry)
