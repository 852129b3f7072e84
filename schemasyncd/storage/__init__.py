"""
Backup storage management for schemasyncd.

This module provides retention and storage monitoring for stored backups:
- Multi-tier retention policy evaluation (count, age, daily/weekly/monthly)
- Dry-run and destructive cleanup with per-database locking
- Scheduled cleanup
- Storage usage, quota, health, optimization and alerting
"""

from .interfaces import BackupCatalog, BackupInventoryProvider
from .inventory import InMemoryBackupInventory, LocalBackupInventory
from .retention_config import (
    BackupSystemConfig, MonitoringThresholds, QuotaConfig, SchedulerSettings, load_backup_config
)
from .retention_errors import (
    ConfigurationError, DeletionError, EvaluationError, FieldError, InventoryAccessError, RetentionError
)
from .retention_manager import RetentionManager, create_retention_manager
from .retention_models import (
    BackupFilter, BackupRecord, BackupStatus, CleanupReport, CleanupStatus, CompressionAlgorithm,
    ReasonCode, RetentionDecision, RetentionPolicy, RetentionReport
)
from .retention_monitoring import AlertCode, AlertSeverity, HealthStatus, StorageAlert, StorageMonitor
from .retention_policy import evaluate
from .retention_scheduler import RetentionScheduler, SchedulerStatus

__all__ = [
    'BackupCatalog',
    'BackupInventoryProvider',
    'InMemoryBackupInventory',
    'LocalBackupInventory',
    'BackupSystemConfig',
    'MonitoringThresholds',
    'QuotaConfig',
    'load_backup_config',
    'ConfigurationError',
    'DeletionError',
    'EvaluationError',
    'FieldError',
    'InventoryAccessError',
    'RetentionError',
    'RetentionManager',
    'create_retention_manager',
    'BackupFilter',
    'BackupRecord',
    'BackupStatus',
    'CleanupReport',
    'CleanupStatus',
    'CompressionAlgorithm',
    'ReasonCode',
    'RetentionDecision',
    'RetentionPolicy',
    'RetentionReport',
    'AlertCode',
    'AlertSeverity',
    'HealthStatus',
    'StorageAlert',
    'StorageMonitor',
    'evaluate',
    'RetentionScheduler',
    'SchedulerSettings',
    'SchedulerStatus',
]
