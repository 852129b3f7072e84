"""
Configuration management for the retention system.

Configuration is read from a YAML file and then overridden by environment
variables (a ``.env`` file is honoured). Durations accept plain seconds,
Go-style strings such as ``"48h"`` or ``"1h30m"``, and ``d``/``w`` suffixes.
"""

import logging
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .retention_errors import ConfigurationError, FieldError, ValidationErrors
from .retention_models import RetentionPolicy

logger = logging.getLogger(__name__)

_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}
_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w)")


def parse_duration(value: Any) -> timedelta:
    """Parse a duration from a timedelta, a number of seconds or a unit string."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip().lower()
    sign = 1
    if text.startswith("-"):
        sign, text = -1, text[1:]
    if not text:
        raise ValueError(f"invalid duration: {value!r}")
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return sign * timedelta(seconds=float(text))

    total = timedelta(0)
    position = 0
    for match in _DURATION_TOKEN.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return sign * total


def format_duration(value: timedelta) -> str:
    """Render a duration using the largest whole units, e.g. ``1d6h``."""
    seconds = int(value.total_seconds())
    if seconds == 0:
        return "0s"
    sign = "-" if seconds < 0 else ""
    seconds = abs(seconds)
    parts = []
    for unit, size in (("w", 604800), ("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        count, seconds = divmod(seconds, size)
        if count:
            parts.append(f"{count}{unit}")
    return sign + "".join(parts)


class RetentionSettings(BaseModel):
    """Retention policy as configured. Zero disables a limit."""
    max_backups: int = 10
    max_age: timedelta = timedelta(0)
    keep_daily: int = 0
    keep_weekly: int = 0
    keep_monthly: int = 0
    cleanup_interval: timedelta = timedelta(hours=24)
    honor_protection_tags: bool = False

    @field_validator("max_age", "cleanup_interval", mode="before")
    @classmethod
    def parse_durations(cls, value):
        return parse_duration(value)

    def to_policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            max_backups=self.max_backups,
            max_age=self.max_age,
            keep_daily=self.keep_daily,
            keep_weekly=self.keep_weekly,
            keep_monthly=self.keep_monthly,
            cleanup_interval=self.cleanup_interval,
            honor_protection_tags=self.honor_protection_tags,
        )


class QuotaConfig(BaseModel):
    """Storage quotas. Zero means unlimited."""
    max_total_bytes: int = 0
    max_backup_count: int = 0
    per_database_bytes: Dict[str, int] = Field(default_factory=dict)

    def check(self) -> List[FieldError]:
        errors = ValidationErrors()
        if self.max_total_bytes < 0:
            errors.add("max_total_bytes", "quota cannot be negative", self.max_total_bytes)
        if self.max_backup_count < 0:
            errors.add("max_backup_count", "quota cannot be negative", self.max_backup_count)
        for database, limit in self.per_database_bytes.items():
            if limit <= 0:
                errors.add(f"per_database_bytes.{database}", "per-database quota must be positive", limit)
        return errors.errors


class MonitoringThresholds(BaseModel):
    """Thresholds used by storage health, optimization and alerting."""
    warning_ratio: float = 0.80
    critical_ratio: float = 0.95
    near_limit_ratio: float = 0.90
    min_compression_ratio: float = 1.1
    recompression_savings_fraction: float = 0.3
    stale_after: timedelta = timedelta(days=7)

    @field_validator("stale_after", mode="before")
    @classmethod
    def parse_durations(cls, value):
        return parse_duration(value)

    def check(self) -> List[FieldError]:
        errors = ValidationErrors()
        for name in ("warning_ratio", "critical_ratio", "near_limit_ratio"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                errors.add(name, "ratio must be within (0, 1]", value)
        if self.warning_ratio > self.critical_ratio:
            errors.add("warning_ratio", "warning ratio cannot exceed critical ratio", self.warning_ratio)
        if self.min_compression_ratio < 1:
            errors.add("min_compression_ratio", "minimum compression ratio must be at least 1", self.min_compression_ratio)
        if not 0 <= self.recompression_savings_fraction <= 1:
            errors.add(
                "recompression_savings_fraction", "fraction must be within [0, 1]",
                self.recompression_savings_fraction
            )
        if self.stale_after <= timedelta(0):
            errors.add("stale_after", "stale threshold must be positive", self.stale_after)
        return errors.errors


class SchedulerSettings(BaseModel):
    enabled: bool = True
    dry_run: bool = False
    run_on_start: bool = False


class LocalStorageConfig(BaseModel):
    provider: Literal["local"] = "local"
    base_path: str = "./backups"

    def check(self) -> List[FieldError]:
        errors = ValidationErrors()
        if not self.base_path:
            errors.add("base_path", "local base path is required")
        return errors.errors


class S3StorageConfig(BaseModel):
    provider: Literal["s3"] = "s3"
    bucket: str = ""
    region: str = ""
    prefix: str = ""
    endpoint_url: Optional[str] = None

    def check(self) -> List[FieldError]:
        errors = ValidationErrors()
        if not self.bucket:
            errors.add("bucket", "S3 bucket is required")
        if not self.region:
            errors.add("region", "S3 region is required")
        return errors.errors


class AzureStorageConfig(BaseModel):
    provider: Literal["azure"] = "azure"
    account_name: str = ""
    container_name: str = ""
    prefix: str = ""

    def check(self) -> List[FieldError]:
        errors = ValidationErrors()
        if not self.account_name:
            errors.add("account_name", "Azure account name is required")
        if not self.container_name:
            errors.add("container_name", "Azure container name is required")
        return errors.errors


class GCSStorageConfig(BaseModel):
    provider: Literal["gcs"] = "gcs"
    bucket: str = ""
    project_id: str = ""
    prefix: str = ""

    def check(self) -> List[FieldError]:
        errors = ValidationErrors()
        if not self.bucket:
            errors.add("bucket", "GCS bucket is required")
        if not self.project_id:
            errors.add("project_id", "GCS project ID is required")
        return errors.errors


StorageConfig = Annotated[
    Union[LocalStorageConfig, S3StorageConfig, AzureStorageConfig, GCSStorageConfig],
    Field(discriminator="provider"),
]


class BackupSystemConfig(BaseModel):
    """Complete configuration of the retention and monitoring system."""
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    monitoring: MonitoringThresholds = Field(default_factory=MonitoringThresholds)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    storage: StorageConfig = Field(default_factory=LocalStorageConfig)
    audit_log_dir: Optional[str] = None

    @property
    def policy(self) -> RetentionPolicy:
        return self.retention.to_policy()

    def check(self):
        """Raise ConfigurationError listing every invalid setting."""
        errors = ValidationErrors()
        try:
            self.policy.validate()
        except ConfigurationError as e:
            errors.extend(e.errors, prefix="retention")
        errors.extend(self.quota.check(), prefix="quota")
        errors.extend(self.monitoring.check(), prefix="monitoring")
        errors.extend(self.storage.check(), prefix=f"storage.{self.storage.provider}")
        errors.raise_if_any(operation="load_backup_config")


_ENV_OVERRIDES = {
    "BACKUP_MAX_BACKUPS": ("retention", "max_backups"),
    "BACKUP_MAX_AGE": ("retention", "max_age"),
    "BACKUP_CLEANUP_INTERVAL": ("retention", "cleanup_interval"),
    "BACKUP_KEEP_DAILY": ("retention", "keep_daily"),
    "BACKUP_KEEP_WEEKLY": ("retention", "keep_weekly"),
    "BACKUP_KEEP_MONTHLY": ("retention", "keep_monthly"),
    "BACKUP_QUOTA_MAX_BYTES": ("quota", "max_total_bytes"),
    "BACKUP_QUOTA_MAX_COUNT": ("quota", "max_backup_count"),
    "BACKUP_STORAGE_PROVIDER": ("storage", "provider"),
    "BACKUP_LOCAL_BASE_PATH": ("storage", "base_path"),
    "BACKUP_S3_BUCKET": ("storage", "bucket"),
    "BACKUP_S3_REGION": ("storage", "region"),
    "BACKUP_AZURE_ACCOUNT_NAME": ("storage", "account_name"),
    "BACKUP_AZURE_CONTAINER_NAME": ("storage", "container_name"),
    "BACKUP_GCS_BUCKET": ("storage", "bucket"),
    "BACKUP_GCS_PROJECT_ID": ("storage", "project_id"),
}


def get_default_config() -> Dict[str, Any]:
    """Default configuration, as written by ``save_default_config``."""
    return {
        'retention': {
            'max_backups': 10,
            'max_age': '0s',
            'keep_daily': 0,
            'keep_weekly': 0,
            'keep_monthly': 0,
            'cleanup_interval': '24h',
            'honor_protection_tags': False
        },
        'quota': {
            'max_total_bytes': 0,
            'max_backup_count': 0,
            'per_database_bytes': {}
        },
        'monitoring': {
            'warning_ratio': 0.80,
            'critical_ratio': 0.95,
            'near_limit_ratio': 0.90,
            'min_compression_ratio': 1.1,
            'recompression_savings_fraction': 0.3,
            'stale_after': '7d'
        },
        'scheduler': {
            'enabled': True,
            'dry_run': False,
            'run_on_start': False
        },
        'storage': {
            'provider': 'local',
            'base_path': './backups'
        }
    }


def save_default_config(config_path: Path):
    """Write the default configuration to a YAML file."""
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        yaml.dump(get_default_config(), f, default_flow_style=False, indent=2, sort_keys=False)
    logger.info(f"Wrote default retention config to {config_path}")


def _apply_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is None or value == "":
            continue
        # Provider-specific keys only apply to the matching provider.
        provider = env_name.split("_")[1].lower()
        if section == "storage" and key != "provider":
            active = config_data.get("storage", {}).get("provider", "local")
            if provider != active:
                continue
        config_data.setdefault(section, {})[key] = value
        logger.debug(f"Config override from {env_name}: {section}.{key}")
    return config_data


def _field_errors(error: ValidationError) -> List[FieldError]:
    errors = []
    for item in error.errors():
        field = ".".join(str(part) for part in item.get("loc", ())) or "config"
        errors.append(FieldError(field, item.get("msg", "invalid value"), item.get("input")))
    return errors


def load_backup_config(config_path: Optional[Path] = None) -> BackupSystemConfig:
    """
    Load configuration from a YAML file and environment variables.

    A missing file means defaults. Environment variables override file
    values.

    Raises:
        ConfigurationError: if any setting is malformed or invalid.
    """
    load_dotenv()

    config_data: Dict[str, Any] = {}
    if config_path is not None:
        config_path = Path(config_path)
        if config_path.exists():
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
            if not isinstance(config_data, dict):
                raise ConfigurationError.single("config", "top-level YAML value must be a mapping", path=str(config_path))
        else:
            logger.warning(f"Config file not found at {config_path}. Using defaults.")

    config_data = _apply_env_overrides(config_data)

    try:
        config = BackupSystemConfig.model_validate(config_data)
    except ValidationError as e:
        raise ConfigurationError(_field_errors(e), operation="load_backup_config") from e

    config.check()
    logger.info(f"Loaded retention config: {config.policy.describe()}, storage={config.storage.provider}")
    return config
