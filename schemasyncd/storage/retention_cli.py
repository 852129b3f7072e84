"""
Retention CLI for schemasyncd.

This module provides the command-line interface for backup retention
cleanup and storage monitoring.
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import structlog

from .interfaces import BackupInventoryProvider
from .inventory import LocalBackupInventory
from .retention_config import BackupSystemConfig, format_duration, load_backup_config, save_default_config
from .retention_errors import ConfigurationError, RetentionError
from .retention_logging import CleanupAuditLog, create_cleanup_summary, format_bytes
from .retention_manager import RetentionManager
from .retention_metrics import RetentionMetrics
from .retention_models import CleanupReport
from .retention_monitoring import StorageMonitor
from .retention_scheduler import RetentionScheduler


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Setup logging configuration and route structlog through it."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.KeyValueRenderer(key_order=["event"]),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_inventory(config: BackupSystemConfig) -> BackupInventoryProvider:
    """Inventory provider for the configured storage backend."""
    if config.storage.provider == "local":
        return LocalBackupInventory(config.storage.base_path)
    raise ConfigurationError.single(
        "storage.provider",
        f"no inventory provider available for '{config.storage.provider}' from the command line",
        config.storage.provider
    )


def build_manager(config: BackupSystemConfig, metrics: Optional[RetentionMetrics] = None) -> RetentionManager:
    audit_log = CleanupAuditLog(config.audit_log_dir) if config.audit_log_dir else None
    return RetentionManager(build_inventory(config), config.policy, audit_log=audit_log, metrics=metrics)


def build_monitor(config: BackupSystemConfig) -> StorageMonitor:
    return StorageMonitor(
        build_inventory(config), quota=config.quota, thresholds=config.monitoring, policy=config.policy
    )


def print_cleanup_report(report: CleanupReport, verbose: bool = False):
    impact = report.cleanup_impact
    mode = "DRY RUN" if report.dry_run else report.status.value.upper()
    print(f"[{mode}] {report.database_name}: {impact.backups_to_delete} to delete, "
          f"{impact.backups_remaining} retained, {format_bytes(impact.bytes_reclaimable)} reclaimable")
    if verbose:
        for decision in report.decisions:
            marker = "keep  " if decision.retain else "delete"
            reasons = ", ".join(sorted(r.value for r in decision.reasons))
            print(f"  {marker} {decision.backup_id} ({reasons})")
    for outcome in report.failed_deletions:
        print(f"  failed {outcome.backup_id}: {outcome.error}")
    for error in report.evaluation_errors:
        print(f"  excluded: {error}")


async def run_cleanup(args, config: BackupSystemConfig) -> int:
    """Run retention cleanup for one or all databases."""
    manager = build_manager(config)
    print(f"Starting retention cleanup (dry_run={args.dry_run})...")

    if args.database:
        reports = {args.database: await manager.get_cleanup_report(args.database, dry_run=args.dry_run)}
    else:
        reports = await manager.apply_retention_policy_to_all(dry_run=args.dry_run)

    for report in reports.values():
        print_cleanup_report(report, verbose=args.show_decisions)

    if not args.dry_run:
        summary = create_cleanup_summary(reports.values())
        print(f"\nDeleted {summary['total_backups_deleted']} backups, "
              f"freed {format_bytes(summary['total_bytes_reclaimed'])}")
    failed = sum(len(r.failed_deletions) for r in reports.values())
    return 1 if failed else 0


async def show_report(args, config: BackupSystemConfig) -> int:
    report = await build_manager(config).get_retention_report()
    print(f"Total backups: {report.total_backups} ({format_bytes(report.storage_usage)})")
    print(f"Estimated savings: {format_bytes(report.estimated_savings)}")
    print("By age: " + ", ".join(f"{k}={v}" for k, v in report.backups_by_age.items()))
    for name, summary in report.databases.items():
        print(f"  {name}: {summary.retained}/{summary.total_backups} retained, "
              f"{format_bytes(summary.bytes_reclaimable)} reclaimable")
    for name, recommended in report.recommended_policies.items():
        print(f"  recommendation for {name}: max_backups={recommended.max_backups}, "
              f"max_age={format_duration(recommended.max_age)}, keep_daily={recommended.keep_daily}, "
              f"keep_weekly={recommended.keep_weekly}, keep_monthly={recommended.keep_monthly}")
        print(f"    {recommended.reasoning}")
    return 0


async def show_storage(args, config: BackupSystemConfig) -> int:
    usage = await build_monitor(config).get_storage_usage()
    print(f"Backups: {usage.total_backups}")
    print(f"Stored: {format_bytes(usage.total_bytes)} ({format_bytes(usage.total_compressed_bytes)} compressed, "
          f"ratio {usage.compression_ratio:.2f})")
    if usage.oldest_backup:
        print(f"Range: {usage.oldest_backup.isoformat()} .. {usage.newest_backup.isoformat()}")
    for name, breakdown in usage.by_database.items():
        print(f"  {name}: {breakdown.count} backups, {format_bytes(breakdown.total_bytes)}")
    return 0


async def show_health(args, config: BackupSystemConfig) -> int:
    monitor = build_monitor(config)
    summary = await monitor.get_storage_health_summary()
    print(f"Storage health: {summary.overall_status.value.upper()}")
    for factor in summary.factors:
        print(f"  [{factor.severity.value}] {factor.message}")
    print(f"  {summary.critical_issues} critical, {summary.warning_issues} warning issues")
    for action in summary.recommended_actions:
        print(f"  - {action}")
    for check in await monitor.check_storage_quotas():
        state = "ok" if check.within_limit else "EXCEEDED"
        print(f"  quota {check.scope}/{check.kind.value}: {check.percent_used:.1f}% ({state})")
    return 0 if summary.overall_status.value != "critical" else 2


async def show_optimization(args, config: BackupSystemConfig) -> int:
    report = await build_monitor(config).get_storage_optimization_recommendations()
    if not report.recommendations:
        print("No optimization opportunities found")
    for item in report.recommendations:
        print(f"[{item.priority}] {item.description} (saves ~{format_bytes(item.estimated_savings)})")
        print(f"    {item.action_required}")
    print(f"Total potential savings: {format_bytes(report.total_potential_savings)}")
    return 0


async def show_trends(args, config: BackupSystemConfig) -> int:
    report = await build_monitor(config).get_storage_trends(timedelta(days=args.days))
    print(f"Last {args.days} days: {report.backup_count} backups, {format_bytes(report.total_growth_bytes)} "
          f"({format_bytes(report.growth_rate_per_day)}/day)")
    for name, trend in report.database_trends.items():
        print(f"  {name}: {trend.trend}, {trend.backup_count} backups")
    frequency = report.backup_frequency
    print(f"Backup frequency: {frequency.daily_average:.2f}/day, {frequency.weekly_average:.1f}/week ({frequency.trend})")
    compression = report.compression_trends
    print(f"Stored/original ratio: {compression.average_ratio:.2f} ({compression.ratio_trend})")
    prediction = report.prediction
    print(f"Predicted usage in 30 days: {format_bytes(prediction.in_30_days)}")
    if prediction.days_to_quota is not None:
        print(f"Days until quota: {prediction.days_to_quota:.0f}")
    for line in report.recommendations:
        print(f"  - {line}")
    return 0


async def show_alerts(args, config: BackupSystemConfig) -> int:
    alerts = await build_monitor(config).generate_storage_alerts()
    if not alerts:
        print("No storage alerts")
    for alert in alerts:
        print(f"[{alert.severity.value}] {alert.code.value}: {alert.message}")
    return 1 if any(a.severity.value == "critical" for a in alerts) else 0


def show_policy(args, config: BackupSystemConfig) -> int:
    policy = config.policy
    print(f"Retention policy: {policy.describe()}")
    print(f"Cleanup interval: {format_duration(policy.cleanup_interval)}")
    print(f"Storage provider: {config.storage.provider}")
    return 0


def show_history(args, config: BackupSystemConfig) -> int:
    if not config.audit_log_dir:
        print("No audit_log_dir configured; cleanup history is kept in memory only")
        return 1
    day = datetime.strptime(args.date, "%Y-%m-%d") if args.date else None
    entries = CleanupAuditLog(config.audit_log_dir).read_entries(day)
    for entry in entries[-args.limit:] if args.limit else entries:
        print(f"{entry['generated_at']} {entry['database_name']} {entry['status']} "
              f"deleted={len([d for d in entry['deletions'] if d['status'] == 'deleted'])}")
    return 0


def print_scheduled_report(report: CleanupReport):
    print(f"Scheduled cleanup of {report.database_name}: {report.status.value}, "
          f"{len(report.deleted_ids)} deleted, {format_bytes(report.bytes_reclaimed)} reclaimed")


async def run_daemon(args, config: BackupSystemConfig) -> int:
    """Run the scheduler until SIGINT/SIGTERM."""
    manager = build_manager(config, RetentionMetrics())
    settings = config.scheduler
    if args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    scheduler = RetentionScheduler(manager, settings, report_callback=print_scheduled_report)
    await scheduler.start()
    if not scheduler.is_running():
        return 0
    scheduler.setup_signal_handlers()
    while scheduler.is_running():
        await asyncio.sleep(1)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="schemasyncd backup retention and storage monitoring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Preview what cleanup would delete
  schemasyncd-retention cleanup --dry-run --show-decisions

  # Clean up one database
  schemasyncd-retention cleanup --database orders

  # Storage alerts (exit code 1 when any alert is critical)
  schemasyncd-retention alerts
        """
    )
    parser.add_argument('--config', default='configs/backup.yaml', help='Path to backup configuration file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--log-file', help='Also write logs to this file')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    cleanup_parser = subparsers.add_parser('cleanup', help='Apply the retention policy')
    cleanup_parser.add_argument('--database', help='Database to clean up (default: all)')
    cleanup_parser.add_argument('--dry-run', action='store_true', help='Report without deleting')
    cleanup_parser.add_argument('--show-decisions', action='store_true', help='Print every retention decision')

    subparsers.add_parser('report', help='Show the retention report')
    subparsers.add_parser('storage', help='Show storage usage')
    subparsers.add_parser('health', help='Show storage health and quotas')
    subparsers.add_parser('optimize', help='Show optimization recommendations')

    trends_parser = subparsers.add_parser('trends', help='Show storage growth trends')
    trends_parser.add_argument('--days', type=int, default=30, help='Trend period in days')

    subparsers.add_parser('alerts', help='Generate storage alerts')
    subparsers.add_parser('policy', help='Validate and show the retention policy')

    history_parser = subparsers.add_parser('history', help='Show the cleanup audit log')
    history_parser.add_argument('--date', help='Day to show (YYYY-MM-DD, default today)')
    history_parser.add_argument('--limit', type=int, default=0, help='Show only the last N entries')

    daemon_parser = subparsers.add_parser('daemon', help='Run scheduled cleanup')
    daemon_parser.add_argument('--dry-run', action='store_true', help='Scheduled runs report without deleting')

    init_parser = subparsers.add_parser('init-config', help='Write the default configuration file')
    init_parser.add_argument('--force', action='store_true', help='Overwrite an existing file')
    return parser


ASYNC_COMMANDS = {
    'cleanup': run_cleanup,
    'report': show_report,
    'storage': show_storage,
    'health': show_health,
    'optimize': show_optimization,
    'trends': show_trends,
    'alerts': show_alerts,
    'daemon': run_daemon,
}

SYNC_COMMANDS = {
    'policy': show_policy,
    'history': show_history,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.verbose, args.log_file)

    if args.command == 'init-config':
        config_path = Path(args.config)
        if config_path.exists() and not args.force:
            print(f"Config already exists: {config_path} (use --force to overwrite)")
            return 1
        save_default_config(config_path)
        print(f"Wrote {config_path}")
        return 0

    try:
        config = load_backup_config(Path(args.config))
        if args.command in SYNC_COMMANDS:
            return SYNC_COMMANDS[args.command](args, config)
        return asyncio.run(ASYNC_COMMANDS[args.command](args, config))
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 1
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        for error in e.errors:
            print(f"  - {error}")
        return 2
    except RetentionError as e:
        print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
