"""
Storage monitoring for backup inventories.

Provides:
- Storage usage aggregation by provider, database and age
- Quota checks (total bytes, total count, per-database bytes)
- Health summaries and alert generation
- Optimization analysis (compression, retention, duplication)
- Growth trends and usage predictions

Every public operation takes exactly one inventory snapshot, so the parts of a
report (and every alert of one ``generate_storage_alerts`` call) are mutually
consistent.
"""

import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from .interfaces import BackupInventoryProvider
from .retention_config import MonitoringThresholds, QuotaConfig
from .retention_errors import ConfigurationError, InventoryAccessError
from .retention_manager import age_bucket
from .retention_metrics import RetentionMetrics
from .retention_models import BackupRecord, BackupStatus, CompressionAlgorithm, RetentionPolicy, as_utc, utc_now
from .retention_policy import evaluate_with_errors

logger = structlog.get_logger(__name__)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertSeverity(Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {AlertSeverity.INFO: 0, AlertSeverity.WARNING: 1, AlertSeverity.CRITICAL: 2}


class AlertCode(Enum):
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    QUOTA_NEAR_LIMIT = "QUOTA_NEAR_LIMIT"
    CORRUPTED_BACKUP = "CORRUPTED_BACKUP"
    STALE_INCOMPLETE_BACKUP = "STALE_INCOMPLETE_BACKUP"
    DUPLICATE_BACKUPS = "DUPLICATE_BACKUPS"
    STALE_LOW_COMPRESSION = "STALE_LOW_COMPRESSION"


class QuotaKind(Enum):
    BYTES = "bytes"
    COUNT = "count"


QUOTA_SCOPE_TOTAL = "total"
MAX_RECOMMENDED_ACTIONS = 5


@dataclass(frozen=True)
class UsageBreakdown:
    count: int = 0
    total_bytes: int = 0
    compressed_bytes: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


@dataclass(frozen=True)
class StorageUsageReport:
    total_backups: int
    total_bytes: int
    total_compressed_bytes: int
    compression_ratio: float
    average_backup_bytes: float
    by_provider: Dict[str, UsageBreakdown]
    by_database: Dict[str, UsageBreakdown]
    by_age: Dict[str, int]
    oldest_backup: Optional[datetime]
    newest_backup: Optional[datetime]
    largest_backup_id: Optional[str]
    generated_at: datetime


@dataclass(frozen=True)
class DatabaseStorageUsage:
    database_name: str
    usage: UsageBreakdown
    average_backup_bytes: float
    compression_ratio: float
    status_counts: Dict[str, int]
    latest_backup_id: Optional[str]


@dataclass(frozen=True)
class QuotaCheck:
    """One quota measurement. ``percent_used`` is capped at 100 for display."""
    kind: QuotaKind
    scope: str
    limit: int
    used: int
    usage_ratio: float
    percent_used: float
    within_limit: bool

    @classmethod
    def measure(cls, kind: QuotaKind, scope: str, limit: int, used: int) -> "QuotaCheck":
        return cls(
            kind=kind,
            scope=scope,
            limit=limit,
            used=used,
            usage_ratio=used / limit,
            percent_used=min(used * 100 / limit, 100.0),
            within_limit=used <= limit,
        )


@dataclass(frozen=True)
class HealthFactor:
    code: AlertCode
    severity: AlertSeverity
    message: str
    related_backup_ids: Tuple[str, ...] = ()
    resolution: str = ""


@dataclass(frozen=True)
class StorageHealthSummary:
    overall_status: HealthStatus
    factors: Tuple[HealthFactor, ...]
    total_backups: int
    total_bytes: int
    quota_percent_used: float
    generated_at: datetime
    critical_issues: int = 0
    warning_issues: int = 0
    recommended_actions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CompressionAnalysis:
    total_backups: int
    compressed_backups: int
    uncompressed_backup_ids: Tuple[str, ...]
    low_compression_backup_ids: Tuple[str, ...]
    average_compression_ratio: float
    potential_savings: int


@dataclass(frozen=True)
class RetentionAnalysis:
    """Backups currently stored that the policy would delete."""
    policy_configured: bool
    eligible_backup_ids: Tuple[str, ...] = ()
    eligible_by_database: Dict[str, int] = field(default_factory=dict)
    potential_savings: int = 0


@dataclass(frozen=True)
class DuplicateGroup:
    checksum: str
    backup_ids: Tuple[str, ...]
    total_bytes: int
    reclaimable_bytes: int

    @property
    def group_size(self) -> int:
        return len(self.backup_ids)


@dataclass(frozen=True)
class DuplicationAnalysis:
    groups: Tuple[DuplicateGroup, ...]
    potential_savings: int


@dataclass(frozen=True)
class OptimizationRecommendation:
    type: str
    priority: str
    estimated_savings: int
    description: str
    action_required: str


@dataclass(frozen=True)
class OptimizationRecommendations:
    compression_analysis: CompressionAnalysis
    retention_analysis: RetentionAnalysis
    duplication_analysis: DuplicationAnalysis
    recommendations: Tuple[OptimizationRecommendation, ...]
    total_potential_savings: int
    generated_at: datetime


@dataclass(frozen=True)
class StorageAlert:
    severity: AlertSeverity
    code: AlertCode
    message: str
    related_backup_ids: Tuple[str, ...] = ()
    details: Dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class DatabaseTrend:
    database_name: str
    growth_bytes: int
    growth_rate_per_day: float
    backup_count: int
    average_backup_bytes: float
    trend: str


@dataclass(frozen=True)
class UsagePrediction:
    current_usage: int
    in_30_days: int
    in_90_days: int
    in_365_days: int
    days_to_quota: Optional[float]
    confidence: float


@dataclass(frozen=True)
class BackupFrequencyTrend:
    """Backups per day, week and month over a trend period."""
    daily_average: float
    weekly_average: float
    monthly_average: float
    trend: str


@dataclass(frozen=True)
class CompressionTrend:
    """Stored/original size ratio; a falling ratio is an improving trend."""
    average_ratio: float
    ratio_trend: str
    algorithm_usage: Dict[str, int]


@dataclass(frozen=True)
class StorageTrendReport:
    period: timedelta
    backup_count: int
    total_growth_bytes: int
    growth_rate_per_day: float
    database_trends: Dict[str, DatabaseTrend]
    prediction: UsagePrediction
    recommendations: Tuple[str, ...]
    generated_at: datetime
    backup_frequency: BackupFrequencyTrend
    compression_trends: CompressionTrend


def calculate_trend(values: Sequence[float]) -> str:
    """Compare the mean of the second half of ``values`` with the first half."""
    if len(values) < 2:
        return "insufficient_data"

    first_half = values[:len(values) // 2]
    second_half = values[len(values) // 2:]
    first_avg = statistics.mean(first_half)
    second_avg = statistics.mean(second_half)

    if second_avg > first_avg * 1.05:
        return "increasing"
    elif second_avg < first_avg * 0.95:
        return "decreasing"
    return "stable"


def analyze_backup_frequency(backups: Sequence[BackupRecord], period: timedelta, now: datetime) -> BackupFrequencyTrend:
    """
    Backup counts per day, week and month over ``period``.

    With at least two weeks of period, the trend compares the number of
    backups in the newer half of the period with the older half; a change
    beyond 20% either way is reported.
    """
    days = period.total_seconds() / 86400
    count = len(backups)
    if count == 0:
        return BackupFrequencyTrend(0.0, 0.0, 0.0, "stable")

    trend = "stable"
    if days >= 14:
        midpoint = as_utc(now) - period / 2
        first_half = sum(1 for b in backups if as_utc(b.created_at) < midpoint)
        second_half = count - first_half
        if second_half > first_half * 1.2:
            trend = "increasing"
        elif second_half < first_half * 0.8:
            trend = "decreasing"

    return BackupFrequencyTrend(
        daily_average=count / days,
        weekly_average=count / (days / 7),
        monthly_average=count / (days / 30),
        trend=trend,
    )


def _stored_fraction(backups: Sequence[BackupRecord]) -> float:
    original = sum(b.size_bytes for b in backups)
    if original <= 0:
        return 0.0
    return sum(b.compressed_size_bytes for b in backups) / original


def analyze_compression_trend(backups: Sequence[BackupRecord]) -> CompressionTrend:
    """
    Stored/original ratio over ``backups`` and how it moved from the oldest
    quarter to the newest quarter (needs at least four backups).
    """
    usage: Dict[str, int] = {}
    for backup in backups:
        usage[backup.compression_algorithm.value] = usage.get(backup.compression_algorithm.value, 0) + 1

    ratio_trend = "stable"
    if len(backups) >= 4:
        ordered = sorted(backups, key=lambda b: (as_utc(b.created_at), b.id))
        quarter = len(ordered) // 4
        first = _stored_fraction(ordered[:quarter])
        last = _stored_fraction(ordered[-quarter:])
        if last < first * 0.95:
            ratio_trend = "improving"
        elif last > first * 1.05:
            ratio_trend = "degrading"

    return CompressionTrend(
        average_ratio=_stored_fraction(backups),
        ratio_trend=ratio_trend,
        algorithm_usage=dict(sorted(usage.items())),
    )


def _breakdown(backups: Sequence[BackupRecord]) -> UsageBreakdown:
    timestamps = [as_utc(b.created_at) for b in backups if isinstance(b.created_at, datetime)]
    return UsageBreakdown(
        count=len(backups),
        total_bytes=sum(b.size_bytes for b in backups),
        compressed_bytes=sum(b.compressed_size_bytes for b in backups),
        oldest=min(timestamps, default=None),
        newest=max(timestamps, default=None),
    )


def _group_by(backups: Sequence[BackupRecord], key: Callable[[BackupRecord], str]) -> Dict[str, List[BackupRecord]]:
    groups: Dict[str, List[BackupRecord]] = {}
    for backup in backups:
        groups.setdefault(key(backup), []).append(backup)
    return groups


def _ratio(total_bytes: int, compressed_bytes: int) -> float:
    if total_bytes <= 0 or compressed_bytes <= 0:
        return 1.0
    return total_bytes / compressed_bytes


def _ids(backups: Sequence[BackupRecord]) -> Tuple[str, ...]:
    return tuple(sorted(b.id for b in backups))


class StorageMonitor:
    """Read-only analysis of the backup inventory."""

    def __init__(
        self,
        inventory: BackupInventoryProvider,
        quota: Optional[QuotaConfig] = None,
        thresholds: Optional[MonitoringThresholds] = None,
        policy: Optional[RetentionPolicy] = None,
        metrics: Optional[RetentionMetrics] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.inventory = inventory
        self.quota = quota or QuotaConfig()
        self.thresholds = thresholds or MonitoringThresholds()
        self.policy = policy
        self.metrics = metrics
        self._clock = clock

    async def _snapshot(self, operation: str) -> List[BackupRecord]:
        try:
            return await self.inventory.list_backups()
        except InventoryAccessError as e:
            raise e.with_context(operation=operation)
        except Exception as e:
            raise InventoryAccessError("failed to list backups", cause=e, operation=operation) from e

    @property
    def stale_incomplete_after(self) -> timedelta:
        """Age after which a non-completed backup counts as stale."""
        if self.policy is not None and self.policy.max_age > timedelta(0):
            return self.policy.max_age
        return self.thresholds.stale_after

    def _older_than(self, backups: Sequence[BackupRecord], limit: timedelta, now: datetime) -> List[BackupRecord]:
        return [b for b in backups if isinstance(b.created_at, datetime) and b.age(now) > limit]

    def _is_low_compression(self, backup: BackupRecord) -> bool:
        if backup.compression_algorithm == CompressionAlgorithm.NONE:
            return True
        return backup.compression_ratio < self.thresholds.min_compression_ratio

    # Usage

    def _usage(self, backups: Sequence[BackupRecord], now: datetime) -> StorageUsageReport:
        total = _breakdown(backups)
        by_age = {"daily": 0, "weekly": 0, "monthly": 0, "older": 0}
        for backup in backups:
            if isinstance(backup.created_at, datetime):
                by_age[age_bucket(backup, now)] += 1

        largest = max(backups, key=lambda b: (b.size_bytes, b.id), default=None)
        return StorageUsageReport(
            total_backups=total.count,
            total_bytes=total.total_bytes,
            total_compressed_bytes=total.compressed_bytes,
            compression_ratio=_ratio(total.total_bytes, total.compressed_bytes),
            average_backup_bytes=(total.total_bytes / total.count) if total.count else 0.0,
            by_provider={
                name: _breakdown(group)
                for name, group in sorted(_group_by(backups, lambda b: b.provider.value).items())
            },
            by_database={
                name: _breakdown(group)
                for name, group in sorted(_group_by(backups, lambda b: b.database_name).items())
            },
            by_age=by_age,
            oldest_backup=total.oldest,
            newest_backup=total.newest,
            largest_backup_id=largest.id if largest else None,
            generated_at=now,
        )

    async def get_storage_usage(self) -> StorageUsageReport:
        now = self._clock()
        backups = await self._snapshot("get_storage_usage")
        report = self._usage(backups, now)

        if self.metrics is not None:
            for name, usage in report.by_database.items():
                self.metrics.storage_bytes.labels(database=name).set(usage.total_bytes)
                self.metrics.storage_backups.labels(database=name).set(usage.count)

        logger.info(
            "storage_usage_computed",
            total_backups=report.total_backups,
            total_bytes=report.total_bytes,
            databases=len(report.by_database),
        )
        return report

    async def get_storage_usage_by_database(self) -> Dict[str, DatabaseStorageUsage]:
        backups = await self._snapshot("get_storage_usage_by_database")
        result = {}
        for name, group in sorted(_group_by(backups, lambda b: b.database_name).items()):
            usage = _breakdown(group)
            status_counts: Dict[str, int] = {}
            for backup in group:
                status_counts[backup.status.value] = status_counts.get(backup.status.value, 0) + 1
            dated = [b for b in group if isinstance(b.created_at, datetime)]
            latest = max(dated, key=lambda b: (as_utc(b.created_at), b.id), default=None)
            result[name] = DatabaseStorageUsage(
                database_name=name,
                usage=usage,
                average_backup_bytes=usage.total_bytes / usage.count,
                compression_ratio=_ratio(usage.total_bytes, usage.compressed_bytes),
                status_counts=status_counts,
                latest_backup_id=latest.id if latest else None,
            )
        return result

    # Quotas

    def _quota_checks(self, backups: Sequence[BackupRecord]) -> List[QuotaCheck]:
        checks = []
        if self.quota.max_total_bytes > 0:
            used = sum(b.size_bytes for b in backups)
            checks.append(QuotaCheck.measure(QuotaKind.BYTES, QUOTA_SCOPE_TOTAL, self.quota.max_total_bytes, used))
        if self.quota.max_backup_count > 0:
            checks.append(QuotaCheck.measure(QuotaKind.COUNT, QUOTA_SCOPE_TOTAL, self.quota.max_backup_count, len(backups)))
        for database, limit in sorted(self.quota.per_database_bytes.items()):
            if limit <= 0:
                continue
            used = sum(b.size_bytes for b in backups if b.database_name == database)
            checks.append(QuotaCheck.measure(QuotaKind.BYTES, database, limit, used))

        if self.metrics is not None:
            for check in checks:
                self.metrics.quota_usage_ratio.labels(kind=check.kind.value, scope=check.scope).set(check.usage_ratio)
        return checks

    async def check_storage_quotas(self) -> List[QuotaCheck]:
        """Measure every configured quota. Unlimited quotas are not reported."""
        backups = await self._snapshot("check_storage_quotas")
        checks = self._quota_checks(backups)
        for check in checks:
            if not check.within_limit:
                logger.warning("quota_exceeded", kind=check.kind.value, scope=check.scope,
                               used=check.used, limit=check.limit)
        return checks

    # Health

    def _health(self, backups: Sequence[BackupRecord], checks: Sequence[QuotaCheck], now: datetime) -> StorageHealthSummary:
        factors: List[HealthFactor] = []

        corrupted = [b for b in backups if b.status == BackupStatus.CORRUPTED]
        if corrupted:
            factors.append(HealthFactor(
                AlertCode.CORRUPTED_BACKUP, AlertSeverity.CRITICAL,
                f"{len(corrupted)} corrupted backups", _ids(corrupted),
                "Verify corrupted backups and re-run them from the source database"
            ))

        for check in checks:
            if check.usage_ratio > self.thresholds.critical_ratio:
                severity = AlertSeverity.CRITICAL
                resolution = "Immediate action required: clean up old backups or increase the quota"
            elif check.usage_ratio > self.thresholds.warning_ratio:
                severity = AlertSeverity.WARNING
                resolution = "Review the retention policy and clean up old backups"
            else:
                continue
            code = AlertCode.QUOTA_EXCEEDED if check.usage_ratio > 1 else AlertCode.QUOTA_NEAR_LIMIT
            factors.append(HealthFactor(
                code, severity,
                f"{check.scope} {check.kind.value} quota at {check.percent_used:.1f}% ({check.used}/{check.limit})",
                resolution=resolution
            ))

        stale_incomplete = [
            b for b in self._older_than(backups, self.stale_incomplete_after, now)
            if b.status != BackupStatus.COMPLETED
        ]
        if stale_incomplete:
            factors.append(HealthFactor(
                AlertCode.STALE_INCOMPLETE_BACKUP, AlertSeverity.WARNING,
                f"{len(stale_incomplete)} backups older than {self.stale_incomplete_after} never completed",
                _ids(stale_incomplete),
                "Investigate and remove backups that never completed"
            ))

        stale_uncompressed = [
            b for b in self._older_than(backups, self.thresholds.stale_after, now)
            if b.compression_algorithm == CompressionAlgorithm.NONE
        ]
        if stale_uncompressed:
            factors.append(HealthFactor(
                AlertCode.STALE_LOW_COMPRESSION, AlertSeverity.INFO,
                f"{len(stale_uncompressed)} uncompressed backups older than {self.thresholds.stale_after}",
                _ids(stale_uncompressed),
                "Enable compression in backup configuration"
            ))

        # first-seen order, at most MAX_RECOMMENDED_ACTIONS
        actions: List[str] = []
        for factor in factors:
            if factor.severity == AlertSeverity.INFO or not factor.resolution or factor.resolution in actions:
                continue
            actions.append(factor.resolution)

        severities = {f.severity for f in factors}
        if AlertSeverity.CRITICAL in severities:
            overall = HealthStatus.CRITICAL
        elif AlertSeverity.WARNING in severities:
            overall = HealthStatus.WARNING
        else:
            overall = HealthStatus.HEALTHY

        return StorageHealthSummary(
            overall_status=overall,
            factors=tuple(factors),
            total_backups=len(backups),
            total_bytes=sum(b.size_bytes for b in backups),
            quota_percent_used=max((c.percent_used for c in checks), default=0.0),
            generated_at=now,
            critical_issues=sum(1 for f in factors if f.severity == AlertSeverity.CRITICAL),
            warning_issues=sum(1 for f in factors if f.severity == AlertSeverity.WARNING),
            recommended_actions=tuple(actions[:MAX_RECOMMENDED_ACTIONS]),
        )

    async def get_storage_health_summary(self) -> StorageHealthSummary:
        now = self._clock()
        backups = await self._snapshot("get_storage_health_summary")
        summary = self._health(backups, self._quota_checks(backups), now)
        logger.info("storage_health_evaluated", status=summary.overall_status.value, factors=len(summary.factors))
        return summary

    # Optimization

    def _compression_analysis(self, backups: Sequence[BackupRecord]) -> CompressionAnalysis:
        uncompressed = [b for b in backups if b.compression_algorithm == CompressionAlgorithm.NONE]
        low = [
            b for b in backups
            if b.compression_algorithm != CompressionAlgorithm.NONE
            and b.compression_ratio < self.thresholds.min_compression_ratio
        ]
        savings = sum(
            int(b.compressed_size_bytes * self.thresholds.recompression_savings_fraction)
            for b in uncompressed + low
        )
        compressed = [b for b in backups if b.compression_algorithm != CompressionAlgorithm.NONE]
        return CompressionAnalysis(
            total_backups=len(backups),
            compressed_backups=len(compressed),
            uncompressed_backup_ids=_ids(uncompressed),
            low_compression_backup_ids=_ids(low),
            average_compression_ratio=(
                statistics.mean(b.compression_ratio for b in compressed) if compressed else 1.0
            ),
            potential_savings=savings,
        )

    def _retention_analysis(self, backups: Sequence[BackupRecord], now: datetime) -> RetentionAnalysis:
        if self.policy is None:
            return RetentionAnalysis(policy_configured=False)

        eligible: List[BackupRecord] = []
        by_database: Dict[str, int] = {}
        for name, group in sorted(_group_by(backups, lambda b: b.database_name).items()):
            decisions, _ = evaluate_with_errors(group, self.policy, now)
            candidates = [d.backup for d in decisions if not d.retain]
            if candidates:
                by_database[name] = len(candidates)
                eligible.extend(candidates)
        return RetentionAnalysis(
            policy_configured=True,
            eligible_backup_ids=_ids(eligible),
            eligible_by_database=by_database,
            potential_savings=sum(b.size_bytes for b in eligible),
        )

    def _duplication_analysis(self, backups: Sequence[BackupRecord]) -> DuplicationAnalysis:
        groups = []
        for checksum, group in sorted(_group_by([b for b in backups if b.checksum], lambda b: b.checksum).items()):
            if len(group) < 2:
                continue
            total = sum(b.size_bytes for b in group)
            groups.append(DuplicateGroup(
                checksum=checksum,
                backup_ids=_ids(group),
                total_bytes=total,
                reclaimable_bytes=total - max(b.size_bytes for b in group),
            ))
        return DuplicationAnalysis(
            groups=tuple(groups),
            potential_savings=sum(g.reclaimable_bytes for g in groups),
        )

    def _optimization(self, backups: Sequence[BackupRecord], now: datetime) -> OptimizationRecommendations:
        compression = self._compression_analysis(backups)
        retention = self._retention_analysis(backups, now)
        duplication = self._duplication_analysis(backups)

        recommendations = []
        flagged = len(compression.uncompressed_backup_ids) + len(compression.low_compression_backup_ids)
        if flagged:
            recommendations.append(OptimizationRecommendation(
                type="compression",
                priority="high",
                estimated_savings=compression.potential_savings,
                description=f"Recompress {flagged} uncompressed or poorly compressed backups",
                action_required="Enable compression in backup configuration",
            ))
        if retention.eligible_backup_ids:
            recommendations.append(OptimizationRecommendation(
                type="retention",
                priority="medium",
                estimated_savings=retention.potential_savings,
                description=f"Clean up {len(retention.eligible_backup_ids)} backups eligible for removal",
                action_required="Run retention cleanup",
            ))
        if duplication.potential_savings > 0:
            recommendations.append(OptimizationRecommendation(
                type="deduplication",
                priority="low",
                estimated_savings=duplication.potential_savings,
                description=f"Remove duplicate backups to save {duplication.potential_savings} bytes",
                action_required="Delete redundant copies of identical backups",
            ))

        return OptimizationRecommendations(
            compression_analysis=compression,
            retention_analysis=retention,
            duplication_analysis=duplication,
            recommendations=tuple(recommendations),
            total_potential_savings=(
                compression.potential_savings + retention.potential_savings + duplication.potential_savings
            ),
            generated_at=now,
        )

    async def get_storage_optimization_recommendations(self) -> OptimizationRecommendations:
        """
        Compression, retention and duplication analysis of the current inventory.

        Raises:
            ConfigurationError: if a retention policy is set but invalid.
        """
        now = self._clock()
        backups = await self._snapshot("get_storage_optimization_recommendations")
        report = self._optimization(backups, now)
        logger.info("storage_optimization_analyzed", recommendations=len(report.recommendations),
                    potential_savings=report.total_potential_savings)
        return report

    # Trends

    async def get_storage_trends(self, period: timedelta = timedelta(days=30)) -> StorageTrendReport:
        """Growth of the backups created within ``period`` and usage predictions."""
        if period <= timedelta(0):
            raise ConfigurationError.single("period", "trend period must be positive", period)

        now = self._clock()
        backups = await self._snapshot("get_storage_trends")
        cutoff = now - period
        recent = [b for b in backups if isinstance(b.created_at, datetime) and b.age(now) <= period]
        days = period.total_seconds() / 86400

        growth = sum(b.size_bytes for b in recent)
        growth_rate = growth / days

        database_trends = {}
        for name, group in sorted(_group_by(recent, lambda b: b.database_name).items()):
            group = sorted(group, key=lambda b: (as_utc(b.created_at), b.id))
            total = sum(b.size_bytes for b in group)
            database_trends[name] = DatabaseTrend(
                database_name=name,
                growth_bytes=total,
                growth_rate_per_day=total / days,
                backup_count=len(group),
                average_backup_bytes=total / len(group),
                trend=calculate_trend([b.size_bytes for b in group]),
            )

        prediction = self._predict_usage(backups, growth_rate)
        recommendations = self._trend_recommendations(growth_rate, database_trends, prediction)

        logger.info("storage_trends_analyzed", period_days=round(days, 2), since=cutoff.isoformat(),
                    growth_bytes=growth, growth_rate_per_day=round(growth_rate, 2))
        return StorageTrendReport(
            period=period,
            backup_count=len(recent),
            total_growth_bytes=growth,
            growth_rate_per_day=growth_rate,
            database_trends=database_trends,
            prediction=prediction,
            recommendations=tuple(recommendations),
            generated_at=now,
            backup_frequency=analyze_backup_frequency(recent, period, now),
            compression_trends=analyze_compression_trend(recent),
        )

    def _predict_usage(self, backups: Sequence[BackupRecord], growth_rate: float) -> UsagePrediction:
        current = sum(b.size_bytes for b in backups)
        if len(backups) >= 10:
            confidence = 0.8
        elif len(backups) >= 5:
            confidence = 0.6
        else:
            confidence = 0.5

        days_to_quota = None
        quota = self.quota.max_total_bytes
        if quota > current and growth_rate > 0:
            days_to_quota = (quota - current) / growth_rate

        return UsagePrediction(
            current_usage=current,
            in_30_days=current + int(growth_rate * 30),
            in_90_days=current + int(growth_rate * 90),
            in_365_days=current + int(growth_rate * 365),
            days_to_quota=days_to_quota,
            confidence=confidence,
        )

    def _trend_recommendations(
        self,
        growth_rate: float,
        database_trends: Dict[str, DatabaseTrend],
        prediction: UsagePrediction
    ) -> List[str]:
        recommendations = []
        if prediction.days_to_quota is not None and prediction.days_to_quota < 30:
            recommendations.append(
                f"Total byte quota reached in about {prediction.days_to_quota:.0f} days at the current growth rate"
            )
        if growth_rate > 100 * 1024 * 1024:
            recommendations.append("High storage growth rate detected - consider a stricter retention policy")
        for name, trend in database_trends.items():
            if trend.trend == "increasing":
                recommendations.append(f"Backup size of {name} is increasing - review what the backups contain")
        if not recommendations:
            recommendations.append("Storage growth appears normal - no immediate action required")
        return recommendations

    # Alerts

    async def generate_storage_alerts(self) -> List[StorageAlert]:
        """
        Alerts for the current inventory, critical first.

        Quota, health and optimization conditions are all derived from one
        inventory snapshot.
        """
        now = self._clock()
        backups = await self._snapshot("generate_storage_alerts")
        checks = self._quota_checks(backups)
        alerts: List[StorageAlert] = []

        for check in checks:
            details = {"kind": check.kind.value, "scope": check.scope, "used": check.used,
                       "limit": check.limit, "percent_used": check.percent_used}
            if check.usage_ratio > 1:
                alerts.append(StorageAlert(
                    AlertSeverity.CRITICAL, AlertCode.QUOTA_EXCEEDED,
                    f"{check.scope} {check.kind.value} quota exceeded: {check.used}/{check.limit}",
                    details=details
                ))
            elif check.usage_ratio >= self.thresholds.near_limit_ratio:
                severity = (
                    AlertSeverity.CRITICAL if check.usage_ratio > self.thresholds.critical_ratio
                    else AlertSeverity.WARNING
                )
                alerts.append(StorageAlert(
                    severity, AlertCode.QUOTA_NEAR_LIMIT,
                    f"{check.scope} {check.kind.value} quota at {check.percent_used:.1f}%",
                    details=details
                ))

        for backup in sorted(backups, key=lambda b: b.id):
            if backup.status == BackupStatus.CORRUPTED:
                alerts.append(StorageAlert(
                    AlertSeverity.CRITICAL, AlertCode.CORRUPTED_BACKUP,
                    f"Backup {backup.id} of {backup.database_name} is corrupted",
                    (backup.id,), {"database": backup.database_name}
                ))

        stale_incomplete = [
            b for b in self._older_than(backups, self.stale_incomplete_after, now)
            if b.status not in (BackupStatus.COMPLETED, BackupStatus.CORRUPTED)
        ]
        if stale_incomplete:
            alerts.append(StorageAlert(
                AlertSeverity.WARNING, AlertCode.STALE_INCOMPLETE_BACKUP,
                f"{len(stale_incomplete)} backups older than {self.stale_incomplete_after} never completed",
                _ids(stale_incomplete)
            ))

        for group in self._duplication_analysis(backups).groups:
            alerts.append(StorageAlert(
                AlertSeverity.WARNING, AlertCode.DUPLICATE_BACKUPS,
                f"{group.group_size} backups share checksum {group.checksum}",
                group.backup_ids, {"reclaimable_bytes": group.reclaimable_bytes}
            ))

        stale_low = [
            b for b in self._older_than(backups, self.thresholds.stale_after, now)
            if self._is_low_compression(b)
        ]
        if stale_low:
            alerts.append(StorageAlert(
                AlertSeverity.WARNING, AlertCode.STALE_LOW_COMPRESSION,
                f"{len(stale_low)} poorly compressed backups older than {self.thresholds.stale_after}",
                _ids(stale_low)
            ))

        alerts.sort(key=lambda a: -a.severity.rank)

        for alert in alerts:
            logger.warning("storage_alert", severity=alert.severity.value, code=alert.code.value,
                           message=alert.message)
            if self.metrics is not None:
                self.metrics.alerts_generated_total.labels(
                    severity=alert.severity.value, code=alert.code.value
                ).inc()
        return alerts
