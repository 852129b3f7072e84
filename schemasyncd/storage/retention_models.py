"""
Data models for the retention system.

This module contains the backup inventory records, retention policy and the
report/decision value objects produced by the retention manager.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .retention_errors import ValidationErrors


class BackupStatus(Enum):
    """Lifecycle status of a backup."""
    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"
    VALIDATING = "validating"
    CORRUPTED = "corrupted"


class CompressionAlgorithm(Enum):
    """Compression applied to a stored backup."""
    NONE = "none"
    GZIP = "gzip"
    LZ4 = "lz4"
    ZSTD = "zstd"


class StorageProviderKind(Enum):
    """Storage backend that holds a backup."""
    LOCAL = "local"
    S3 = "s3"
    AZURE = "azure"
    GCS = "gcs"


class ReasonCode(Enum):
    """Why a backup was retained or marked for deletion."""
    WITHIN_MAX_COUNT = "withinMaxCount"
    WITHIN_MAX_AGE = "withinMaxAge"
    DAILY_BUCKET_REPRESENTATIVE = "dailyBucketRepresentative"
    WEEKLY_BUCKET_REPRESENTATIVE = "weeklyBucketRepresentative"
    MONTHLY_BUCKET_REPRESENTATIVE = "monthlyBucketRepresentative"
    PROTECTED_BY_TAG = "protectedByTag"
    EXCEEDS_MAX_COUNT = "exceedsMaxCount"
    EXCEEDS_MAX_AGE = "exceedsMaxAge"
    NO_POLICY_MATCH = "noPolicyMatch"

    @property
    def is_retaining(self) -> bool:
        return self in RETAINING_REASONS


RETAINING_REASONS = frozenset({
    ReasonCode.WITHIN_MAX_COUNT,
    ReasonCode.WITHIN_MAX_AGE,
    ReasonCode.DAILY_BUCKET_REPRESENTATIVE,
    ReasonCode.WEEKLY_BUCKET_REPRESENTATIVE,
    ReasonCode.MONTHLY_BUCKET_REPRESENTATIVE,
    ReasonCode.PROTECTED_BY_TAG,
})


class CleanupStatus(Enum):
    """Outcome of a cleanup run."""
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class CleanupTrigger(Enum):
    """What started a cleanup run."""
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class DeletionStatus(Enum):
    DELETED = "deleted"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNKNOWN = "unknown"


def as_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BackupRecord:
    """Metadata for one stored backup, as reported by the inventory provider."""
    id: str
    database_name: str
    created_at: Optional[datetime]
    size_bytes: int
    compressed_size_bytes: int
    compression_algorithm: CompressionAlgorithm = CompressionAlgorithm.NONE
    checksum: str = ""
    status: BackupStatus = BackupStatus.COMPLETED
    storage_location: str = ""
    tags: Dict[str, str] = field(default_factory=dict)
    provider: StorageProviderKind = StorageProviderKind.LOCAL

    def __post_init__(self):
        if isinstance(self.created_at, datetime):
            self.created_at = as_utc(self.created_at)

    @property
    def compression_ratio(self) -> float:
        """Original size divided by stored size; 1.0 when either is unknown."""
        if self.size_bytes <= 0 or self.compressed_size_bytes <= 0:
            return 1.0
        return self.size_bytes / self.compressed_size_bytes

    @property
    def is_protected(self) -> bool:
        return self.tags.get("protected", "").lower() == "true"

    def age(self, now: datetime) -> timedelta:
        return as_utc(now) - as_utc(self.created_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "database_name": self.database_name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "size_bytes": self.size_bytes,
            "compressed_size_bytes": self.compressed_size_bytes,
            "compression_algorithm": self.compression_algorithm.value,
            "checksum": self.checksum,
            "status": self.status.value,
            "storage_location": self.storage_location,
            "tags": dict(self.tags),
            "provider": self.provider.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupRecord":
        """Build a record from its metadata mapping. Raises ValueError on malformed input."""
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=data["id"],
            database_name=data["database_name"],
            created_at=created_at,
            size_bytes=int(data.get("size_bytes", 0)),
            compressed_size_bytes=int(data.get("compressed_size_bytes", data.get("size_bytes", 0))),
            compression_algorithm=CompressionAlgorithm(data.get("compression_algorithm", "none").lower()),
            checksum=data.get("checksum", ""),
            status=BackupStatus(data.get("status", "completed").lower()),
            storage_location=data.get("storage_location", ""),
            tags=dict(data.get("tags") or {}),
            provider=StorageProviderKind(data.get("provider", "local").lower()),
        )


@dataclass
class BackupFilter:
    """Scopes an inventory query. Every set criterion must match."""
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    tags: Dict[str, str] = field(default_factory=dict)
    status: Optional[BackupStatus] = None

    def matches(self, record: BackupRecord) -> bool:
        if self.status is not None and record.status != self.status:
            return False
        for key, value in self.tags.items():
            if record.tags.get(key) != value:
                return False
        if self.created_after is not None or self.created_before is not None:
            if not isinstance(record.created_at, datetime):
                return False
            created = as_utc(record.created_at)
            if self.created_after is not None and created < as_utc(self.created_after):
                return False
            if self.created_before is not None and created > as_utc(self.created_before):
                return False
        return True


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Multi-tier retention policy.

    A zero limit means "unlimited / not applied". At least one of the five
    limits must be set. ``cleanup_interval`` only drives scheduling.
    """
    max_backups: int = 0
    max_age: timedelta = timedelta(0)
    keep_daily: int = 0
    keep_weekly: int = 0
    keep_monthly: int = 0
    cleanup_interval: timedelta = timedelta(hours=24)
    honor_protection_tags: bool = False

    def has_any_limit(self) -> bool:
        return bool(
            self.max_backups or self.max_age > timedelta(0)
            or self.keep_daily or self.keep_weekly or self.keep_monthly
        )

    def validate(self):
        """Raise ConfigurationError listing every violated rule."""
        errors = ValidationErrors()
        if self.max_backups < 0:
            errors.add("max_backups", "max backups cannot be negative", self.max_backups)
        if self.max_age < timedelta(0):
            errors.add("max_age", "max age cannot be negative", self.max_age)
        if self.cleanup_interval < timedelta(0):
            errors.add("cleanup_interval", "cleanup interval cannot be negative", self.cleanup_interval)
        if self.keep_daily < 0:
            errors.add("keep_daily", "keep daily cannot be negative", self.keep_daily)
        if self.keep_weekly < 0:
            errors.add("keep_weekly", "keep weekly cannot be negative", self.keep_weekly)
        if self.keep_monthly < 0:
            errors.add("keep_monthly", "keep monthly cannot be negative", self.keep_monthly)
        if not self.has_any_limit():
            errors.add("retention", "at least one retention policy must be configured")
        errors.raise_if_any(operation="validate_retention_policy")

    def describe(self) -> str:
        parts = []
        if self.max_backups:
            parts.append(f"max_backups={self.max_backups}")
        if self.max_age > timedelta(0):
            parts.append(f"max_age={self.max_age}")
        if self.keep_daily:
            parts.append(f"keep_daily={self.keep_daily}")
        if self.keep_weekly:
            parts.append(f"keep_weekly={self.keep_weekly}")
        if self.keep_monthly:
            parts.append(f"keep_monthly={self.keep_monthly}")
        return ", ".join(parts) or "no limits"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_backups": self.max_backups,
            "max_age_seconds": self.max_age.total_seconds(),
            "keep_daily": self.keep_daily,
            "keep_weekly": self.keep_weekly,
            "keep_monthly": self.keep_monthly,
            "cleanup_interval_seconds": self.cleanup_interval.total_seconds(),
            "honor_protection_tags": self.honor_protection_tags,
        }


@dataclass(frozen=True)
class RetentionDecision:
    """Verdict for one backup."""
    backup_id: str
    retain: bool
    reasons: FrozenSet[ReasonCode]
    backup: BackupRecord = field(compare=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "retain": self.retain,
            "reasons": sorted(reason.value for reason in self.reasons),
        }


@dataclass(frozen=True)
class DeletionOutcome:
    backup_id: str
    status: DeletionStatus
    error: Optional[str] = None


@dataclass(frozen=True)
class CleanupImpact:
    """What a cleanup pass removes."""
    backups_to_delete: int
    bytes_reclaimable: int
    backups_remaining: int = 0
    percentage_reduction: float = 0.0
    oldest_backup_removed: Optional[datetime] = None


@dataclass(frozen=True)
class CleanupReport:
    """Immutable snapshot of one retention evaluation and, if not a dry run, its deletions."""
    report_id: str
    database_name: str
    dry_run: bool
    policy_applied: RetentionPolicy
    decisions: Tuple[RetentionDecision, ...]
    cleanup_impact: CleanupImpact
    status: CleanupStatus = CleanupStatus.COMPLETED
    trigger: CleanupTrigger = CleanupTrigger.MANUAL
    deletions: Tuple[DeletionOutcome, ...] = ()
    evaluation_errors: Tuple[str, ...] = ()
    generated_at: datetime = field(default_factory=utc_now)
    duration_seconds: float = 0.0
    message: Optional[str] = None

    @property
    def retained(self) -> List[RetentionDecision]:
        return [d for d in self.decisions if d.retain]

    @property
    def to_delete(self) -> List[RetentionDecision]:
        return [d for d in self.decisions if not d.retain]

    @property
    def deleted_ids(self) -> List[str]:
        return [o.backup_id for o in self.deletions if o.status == DeletionStatus.DELETED]

    @property
    def failed_deletions(self) -> List[DeletionOutcome]:
        return [o for o in self.deletions if o.status == DeletionStatus.FAILED]

    @property
    def bytes_reclaimed(self) -> int:
        deleted = set(self.deleted_ids)
        return sum(d.backup.size_bytes for d in self.decisions if d.backup_id in deleted)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "database_name": self.database_name,
            "dry_run": self.dry_run,
            "status": self.status.value,
            "trigger": self.trigger.value,
            "policy_applied": self.policy_applied.to_dict(),
            "decisions": [d.to_dict() for d in self.decisions],
            "cleanup_impact": {
                "backups_to_delete": self.cleanup_impact.backups_to_delete,
                "bytes_reclaimable": self.cleanup_impact.bytes_reclaimable,
                "backups_remaining": self.cleanup_impact.backups_remaining,
                "percentage_reduction": round(self.cleanup_impact.percentage_reduction, 2),
                "oldest_backup_removed": (
                    self.cleanup_impact.oldest_backup_removed.isoformat()
                    if self.cleanup_impact.oldest_backup_removed else None
                ),
            },
            "deletions": [
                {"backup_id": o.backup_id, "status": o.status.value, "error": o.error}
                for o in self.deletions
            ],
            "evaluation_errors": list(self.evaluation_errors),
            "generated_at": self.generated_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "message": self.message,
        }


@dataclass(frozen=True)
class RecommendedRetentionPolicy:
    """Suggested tuning for a database whose policy keeps nothing or everything."""
    max_backups: int
    max_age: timedelta
    keep_daily: int
    keep_weekly: int
    keep_monthly: int
    reasoning: str


@dataclass(frozen=True)
class DatabaseRetentionSummary:
    database_name: str
    total_backups: int
    retained: int
    to_delete: int
    bytes_reclaimable: int

    @property
    def retained_ratio(self) -> float:
        if self.total_backups == 0:
            return 0.0
        return self.retained / self.total_backups


@dataclass(frozen=True)
class RetentionReport:
    """Retention effectiveness across every known database."""
    total_backups: int
    databases: Dict[str, DatabaseRetentionSummary]
    backups_by_age: Dict[str, int]
    storage_usage: int
    estimated_savings: int
    recommended_policies: Dict[str, RecommendedRetentionPolicy]
    generated_at: datetime = field(default_factory=utc_now)
