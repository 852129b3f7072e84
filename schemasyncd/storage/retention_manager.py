"""
Main retention manager - orchestrates the retention system.

The manager pulls a fresh inventory snapshot on every call, classifies it with
the retention policy evaluator and either reports (dry run) or deletes the
delete-set through the inventory provider.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union

from .interfaces import BackupCatalog, BackupInventoryProvider
from .retention_errors import ConfigurationError, DeletionError, EvaluationError, InventoryAccessError
from .retention_logging import CleanupAuditLog
from .retention_metrics import RetentionMetrics
from .retention_models import (
    BackupRecord, CleanupImpact, CleanupReport, CleanupStatus, CleanupTrigger,
    DatabaseRetentionSummary, DeletionOutcome, DeletionStatus, RecommendedRetentionPolicy,
    RetentionDecision, RetentionPolicy, RetentionReport, as_utc, utc_now
)
from .retention_policy import evaluate_with_errors

logger = logging.getLogger(__name__)

ALL_DATABASES = "*"

AGE_BUCKETS = (
    ("daily", timedelta(days=1)),
    ("weekly", timedelta(days=7)),
    ("monthly", timedelta(days=30)),
)


def age_bucket(backup: BackupRecord, now: datetime) -> str:
    """Coarse age class used in retention and usage reports."""
    age = backup.age(now)
    for name, limit in AGE_BUCKETS:
        if age <= limit:
            return name
    return "older"


def calculate_cleanup_impact(decisions: Sequence[RetentionDecision]) -> CleanupImpact:
    to_delete = [d.backup for d in decisions if not d.retain]
    total = len(decisions)
    return CleanupImpact(
        backups_to_delete=len(to_delete),
        bytes_reclaimable=sum(b.size_bytes for b in to_delete),
        backups_remaining=total - len(to_delete),
        percentage_reduction=(len(to_delete) / total * 100) if total else 0.0,
        oldest_backup_removed=min((as_utc(b.created_at) for b in to_delete), default=None),
    )


def recommend_policy(backups: Sequence[BackupRecord], bytes_reclaimable: int, now: datetime) -> RecommendedRetentionPolicy:
    """Suggest limits sized to a database's current backup distribution."""
    total = len(backups)
    by_age = {"daily": 0, "weekly": 0, "monthly": 0, "older": 0}
    for backup in backups:
        by_age[age_bucket(backup, now)] += 1

    if total > 50:
        max_backups = 30
    elif total > 20:
        max_backups = 20
    else:
        max_backups = 15

    storage = sum(b.size_bytes for b in backups)
    savings_percent = (bytes_reclaimable / storage * 100) if storage else 0.0
    return RecommendedRetentionPolicy(
        max_backups=max_backups,
        max_age=timedelta(days=60) if by_age["older"] > total / 2 else timedelta(days=90),
        keep_daily=14 if by_age["daily"] > 10 else 7,
        keep_weekly=8 if by_age["weekly"] > 8 else 4,
        keep_monthly=6 if by_age["monthly"] > 6 else 3,
        reasoning=(
            f"Based on {total} backups. Current policy would reclaim "
            f"{savings_percent:.1f}% of storage ({bytes_reclaimable} bytes)."
        ),
    )


class RetentionManager:
    """
    Applies a retention policy to the backup inventory.

    Non-dry-run cleanups of one database are serialized by a per-database
    asyncio lock. Dry runs never take the lock and never delete.
    """

    def __init__(
        self,
        inventory: BackupInventoryProvider,
        policy: RetentionPolicy,
        catalog: Optional[BackupCatalog] = None,
        audit_log: Optional[CleanupAuditLog] = None,
        metrics: Optional[RetentionMetrics] = None,
        history_limit: int = 100,
        clock: Callable[[], datetime] = utc_now
    ):
        if history_limit <= 0:
            raise ConfigurationError.single("history_limit", "history limit must be positive", history_limit)

        self.inventory = inventory
        self.policy = policy
        self.catalog = catalog or inventory
        self.audit_log = audit_log
        self.metrics = metrics
        self._clock = clock
        self._history: Deque[CleanupReport] = deque(maxlen=history_limit)
        self._locks: Dict[str, asyncio.Lock] = {}

        logger.info(f"Retention Manager initialized with policy: {policy.describe()}")

    def validate_retention_policy(self):
        """Raise ConfigurationError if the policy is invalid. No inventory access."""
        self.policy.validate()

    def is_cleanup_running(self, database_name: str) -> bool:
        lock = self._locks.get(database_name)
        return lock is not None and lock.locked()

    def _lock_for(self, database_name: str) -> asyncio.Lock:
        lock = self._locks.get(database_name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[database_name] = lock
        return lock

    async def _list_backups(self, database_name: Optional[str], operation: str) -> List[BackupRecord]:
        try:
            return await self.inventory.list_backups(database_name)
        except InventoryAccessError as e:
            raise e.with_context(database=database_name or ALL_DATABASES, operation=operation)
        except Exception as e:
            raise InventoryAccessError(
                "failed to list backups", cause=e,
                database=database_name or ALL_DATABASES, operation=operation
            ) from e

    async def _list_databases(self) -> List[str]:
        try:
            return sorted(await self.catalog.list_databases())
        except InventoryAccessError as e:
            raise e.with_context(operation="list_databases")
        except Exception as e:
            raise InventoryAccessError("failed to list databases", cause=e, operation="list_databases") from e

    def _evaluate(self, backups: Sequence[BackupRecord]) -> Tuple[List[RetentionDecision], List[EvaluationError]]:
        return evaluate_with_errors(backups, self.policy, self._clock())

    def _new_report_id(self, database_name: str) -> str:
        stamp = self._clock().strftime("%Y%m%d_%H%M%S")
        return f"cleanup_{database_name}_{stamp}_{uuid.uuid4().hex[:8]}"

    def _build_report(
        self,
        database_name: str,
        dry_run: bool,
        trigger: CleanupTrigger,
        decisions: Sequence[RetentionDecision],
        errors: Sequence[EvaluationError],
        started: float,
        deletions: Sequence[DeletionOutcome] = (),
        status: CleanupStatus = CleanupStatus.COMPLETED,
        message: Optional[str] = None
    ) -> CleanupReport:
        return CleanupReport(
            report_id=self._new_report_id(database_name),
            database_name=database_name,
            dry_run=dry_run,
            policy_applied=self.policy,
            decisions=tuple(decisions),
            cleanup_impact=calculate_cleanup_impact(decisions),
            status=status,
            trigger=trigger,
            deletions=tuple(deletions),
            evaluation_errors=tuple(str(e) for e in errors),
            generated_at=self._clock(),
            duration_seconds=time.monotonic() - started,
            message=message,
        )

    def _record(self, report: CleanupReport):
        self._history.append(report)
        if self.audit_log is not None:
            self.audit_log.record(report)

    async def get_retention_candidates(self, database_name: str) -> List[BackupRecord]:
        """Backups a cleanup of ``database_name`` would delete right now."""
        self.validate_retention_policy()
        backups = await self._list_backups(database_name, "get_retention_candidates")
        decisions, _ = self._evaluate(backups)
        return [d.backup for d in decisions if not d.retain]

    async def get_retention_report(self) -> RetentionReport:
        """
        Evaluate every catalogued database and summarize.

        The catalog defines which databases are reported; a catalogued
        database without backups gets an empty summary.
        """
        self.validate_retention_policy()
        now = self._clock()

        by_database: Dict[str, List[BackupRecord]] = {}
        for database_name in await self._list_databases():
            by_database[database_name] = await self._list_backups(database_name, "get_retention_report")
        backups = [b for group in by_database.values() for b in group]

        backups_by_age = {"daily": 0, "weekly": 0, "monthly": 0, "older": 0}
        for backup in backups:
            if isinstance(backup.created_at, datetime):
                backups_by_age[age_bucket(backup, now)] += 1

        summaries: Dict[str, DatabaseRetentionSummary] = {}
        recommendations: Dict[str, RecommendedRetentionPolicy] = {}
        for database_name in sorted(by_database):
            decisions, _ = evaluate_with_errors(by_database[database_name], self.policy, now)
            impact = calculate_cleanup_impact(decisions)
            summary = DatabaseRetentionSummary(
                database_name=database_name,
                total_backups=len(decisions),
                retained=impact.backups_remaining,
                to_delete=impact.backups_to_delete,
                bytes_reclaimable=impact.bytes_reclaimable,
            )
            summaries[database_name] = summary
            if summary.total_backups and summary.retained_ratio in (0.0, 1.0):
                recommendations[database_name] = recommend_policy(
                    [d.backup for d in decisions], impact.bytes_reclaimable, now
                )

        report = RetentionReport(
            total_backups=len(backups),
            databases=summaries,
            backups_by_age=backups_by_age,
            storage_usage=sum(b.size_bytes for b in backups),
            estimated_savings=sum(s.bytes_reclaimable for s in summaries.values()),
            recommended_policies=recommendations,
            generated_at=now,
        )
        logger.info(f"Retention report: {report.total_backups} backups across {len(summaries)} databases, "
                    f"{report.estimated_savings} bytes reclaimable")
        return report

    async def get_cleanup_report(
        self,
        database_name: str,
        dry_run: bool = True,
        trigger: Union[CleanupTrigger, str] = CleanupTrigger.MANUAL,
        cancel_event: Optional[asyncio.Event] = None
    ) -> CleanupReport:
        """
        Evaluate ``database_name`` and, unless ``dry_run``, delete the delete-set.

        Deletions run oldest first. Once ``cancel_event`` is set no further
        deletes are issued; the remaining items are reported as skipped. If
        the task is cancelled mid-delete, that item's outcome is unknown.
        Per-item deletion failures are recorded in the report, not raised.

        Raises:
            ConfigurationError: if the policy is invalid.
            InventoryAccessError: if the inventory cannot be listed.
        """
        trigger = CleanupTrigger(trigger)
        self.validate_retention_policy()
        started = time.monotonic()

        if dry_run:
            backups = await self._list_backups(database_name, "get_cleanup_report")
            decisions, errors = self._evaluate(backups)
            report = self._build_report(database_name, True, trigger, decisions, errors, started)
            logger.info(f"Dry run for {database_name}: {report.cleanup_impact.backups_to_delete} of "
                        f"{len(decisions)} backups would be deleted")
            if self.metrics is not None:
                self.metrics.record_cleanup(report)
            return report

        async with self._lock_for(database_name):
            backups = await self._list_backups(database_name, "get_cleanup_report")
            decisions, errors = self._evaluate(backups)
            delete_order = [d for d in reversed(decisions) if not d.retain]
            outcomes: List[DeletionOutcome] = []

            try:
                await self._delete_backups(database_name, delete_order, outcomes, cancel_event)
            except asyncio.CancelledError:
                done = {o.backup_id for o in outcomes}
                outcomes.extend(
                    DeletionOutcome(d.backup_id, DeletionStatus.SKIPPED, "cleanup cancelled")
                    for d in delete_order if d.backup_id not in done
                )
                report = self._build_report(
                    database_name, False, trigger, decisions, errors, started,
                    outcomes, CleanupStatus.CANCELLED, "cleanup task cancelled"
                )
                self._record(report)
                logger.warning(f"Cleanup of {database_name} cancelled after {len(report.deleted_ids)} deletions")
                raise

            statuses = {o.status for o in outcomes}
            if DeletionStatus.SKIPPED in statuses:
                status, message = CleanupStatus.CANCELLED, "cleanup cancelled before all deletions were issued"
            elif DeletionStatus.FAILED in statuses:
                failed = sum(1 for o in outcomes if o.status == DeletionStatus.FAILED)
                status, message = CleanupStatus.PARTIAL, f"{failed} deletions failed"
            else:
                status, message = CleanupStatus.COMPLETED, None

            report = self._build_report(
                database_name, False, trigger, decisions, errors, started, outcomes, status, message
            )
            self._record(report)

        if self.metrics is not None:
            self.metrics.record_cleanup(report)
        logger.info(f"Cleanup of {database_name} {report.status.value}: {len(report.deleted_ids)} deleted, "
                    f"{len(report.failed_deletions)} failed, {report.bytes_reclaimed} bytes reclaimed")
        return report

    async def _delete_backups(
        self,
        database_name: str,
        delete_order: Sequence[RetentionDecision],
        outcomes: List[DeletionOutcome],
        cancel_event: Optional[asyncio.Event]
    ):
        for decision in delete_order:
            if cancel_event is not None and cancel_event.is_set():
                outcomes.append(DeletionOutcome(decision.backup_id, DeletionStatus.SKIPPED, "cleanup cancelled"))
                continue
            try:
                await self.inventory.delete_backup(decision.backup_id)
            except asyncio.CancelledError:
                outcomes.append(DeletionOutcome(
                    decision.backup_id, DeletionStatus.UNKNOWN, "cleanup cancelled while the delete was in flight"
                ))
                raise
            except Exception as e:
                error = e if isinstance(e, DeletionError) else DeletionError(decision.backup_id, cause=e)
                error.with_context(database=database_name)
                logger.error(f"Failed to delete backup: {error}")
                outcomes.append(DeletionOutcome(decision.backup_id, DeletionStatus.FAILED, str(error)))
                continue
            logger.info(f"Deleted backup {decision.backup_id} ({database_name}): "
                        f"{', '.join(sorted(r.value for r in decision.reasons))}")
            outcomes.append(DeletionOutcome(decision.backup_id, DeletionStatus.DELETED))

    async def apply_retention_policy_to_all(
        self,
        dry_run: bool = True,
        trigger: Union[CleanupTrigger, str] = CleanupTrigger.MANUAL,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Dict[str, CleanupReport]:
        """
        Run ``get_cleanup_report`` for every known database.

        An inventory failure for one database is logged and does not stop the
        others.
        """
        self.validate_retention_policy()
        databases = await self._list_databases()
        logger.info(f"Applying retention policy to {len(databases)} databases (dry_run={dry_run})")

        reports: Dict[str, CleanupReport] = {}
        for database_name in databases:
            try:
                reports[database_name] = await self.get_cleanup_report(
                    database_name, dry_run=dry_run, trigger=trigger, cancel_event=cancel_event
                )
            except InventoryAccessError as e:
                logger.error(f"Skipping retention for {database_name}: {e}")
        return reports

    def record_skipped_run(self, database_name: str, reason: str) -> CleanupReport:
        """Record a cleanup run that was not performed."""
        report = CleanupReport(
            report_id=self._new_report_id(database_name.replace(ALL_DATABASES, "all")),
            database_name=database_name,
            dry_run=False,
            policy_applied=self.policy,
            decisions=(),
            cleanup_impact=CleanupImpact(backups_to_delete=0, bytes_reclaimable=0),
            status=CleanupStatus.SKIPPED,
            trigger=CleanupTrigger.SCHEDULED,
            generated_at=self._clock(),
            message=reason,
        )
        self._record(report)
        if self.metrics is not None:
            self.metrics.record_skipped_run()
        logger.warning(f"Cleanup run skipped for {database_name}: {reason}")
        return report

    def get_cleanup_history(self, limit: Optional[int] = None) -> List[CleanupReport]:
        """Recorded cleanup runs, newest first."""
        if limit is not None and limit < 0:
            raise ConfigurationError.single("limit", "history limit cannot be negative", limit)
        history = list(reversed(self._history))
        if limit is not None:
            history = history[:limit]
        return history


def create_retention_manager(
    inventory: BackupInventoryProvider,
    policy: RetentionPolicy,
    audit_log_dir: Optional[str] = None,
    metrics: Optional[RetentionMetrics] = None,
    history_limit: int = 100
) -> RetentionManager:
    """Factory function to create a retention manager with an optional audit log."""
    audit_log = CleanupAuditLog(audit_log_dir) if audit_log_dir else None
    return RetentionManager(
        inventory, policy, audit_log=audit_log, metrics=metrics, history_limit=history_limit
    )
