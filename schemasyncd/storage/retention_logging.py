"""
Audit logging for retention cleanup runs.

Every recorded cleanup report is appended as one JSON line to
``cleanup_operations_<YYYY-MM-DD>.jsonl`` in the audit directory. The audit
log is append-only; it is never read back into manager history.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .retention_models import CleanupReport, CleanupStatus

logger = logging.getLogger(__name__)


def format_duration(duration_seconds: float) -> str:
    """Format duration in a human-readable format."""
    if duration_seconds < 60:
        return f"{duration_seconds:.2f}s"
    elif duration_seconds < 3600:
        return f"{duration_seconds / 60:.1f}m"
    return f"{duration_seconds / 3600:.1f}h"


def format_bytes(size: float) -> str:
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(size) < 1024 or unit == "TB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


class CleanupAuditLog:
    """Appends cleanup reports to dated JSONL files."""

    def __init__(self, logs_dir: str = "logs/retention"):
        self.logs_dir = Path(logs_dir)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def _log_file(self, day: datetime) -> Path:
        return self.logs_dir / f"cleanup_operations_{day.strftime('%Y-%m-%d')}.jsonl"

    def record(self, report: CleanupReport) -> bool:
        """Append ``report``. Write failures are logged and reported as False."""
        entry = report.to_dict()
        entry["duration_formatted"] = format_duration(report.duration_seconds)
        entry["bytes_reclaimed"] = report.bytes_reclaimed

        if report.status == CleanupStatus.COMPLETED:
            logger.info(f"Cleanup {report.report_id} completed for {report.database_name}: "
                        f"{len(report.deleted_ids)} deleted, "
                        f"{format_bytes(report.bytes_reclaimed)} freed in {entry['duration_formatted']}")
        elif report.status == CleanupStatus.SKIPPED:
            logger.info(f"Cleanup {report.report_id} skipped for {report.database_name}: {report.message}")
        else:
            logger.warning(f"Cleanup {report.report_id} {report.status.value} for {report.database_name}: "
                           f"{len(report.failed_deletions)} failed deletions")

        try:
            with open(self._log_file(report.generated_at), 'a') as f:
                f.write(json.dumps(entry) + '\n')
        except OSError as e:
            logger.error(f"Failed to store cleanup audit entry {report.report_id}: {e}")
            return False
        return True

    def read_entries(self, day: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Entries for one day (default: today, UTC), oldest first."""
        log_file = self._log_file(day or datetime.now(timezone.utc))
        if not log_file.exists():
            return []

        entries = []
        with open(log_file, 'r') as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping corrupt audit line {line_number} in {log_file}: {e}")
        return entries

    def list_log_files(self) -> List[Path]:
        return sorted(self.logs_dir.glob("cleanup_operations_*.jsonl"))


def create_cleanup_summary(reports: Iterable[CleanupReport]) -> Dict[str, Any]:
    """Aggregate a batch of cleanup reports, grouped by database."""
    reports = list(reports)
    by_database: Dict[str, Dict[str, Any]] = {}
    for report in reports:
        summary = by_database.setdefault(report.database_name, {
            'runs': 0,
            'backups_deleted': 0,
            'bytes_reclaimed': 0,
            'failed_deletions': 0,
            'statuses': {}
        })
        summary['runs'] += 1
        summary['backups_deleted'] += len(report.deleted_ids)
        summary['bytes_reclaimed'] += report.bytes_reclaimed
        summary['failed_deletions'] += len(report.failed_deletions)
        summary['statuses'][report.status.value] = summary['statuses'].get(report.status.value, 0) + 1

    return {
        'total_runs': len(reports),
        'total_backups_deleted': sum(s['backups_deleted'] for s in by_database.values()),
        'total_bytes_reclaimed': sum(s['bytes_reclaimed'] for s in by_database.values()),
        'total_duration_seconds': round(sum(r.duration_seconds for r in reports), 3),
        'by_database': by_database,
    }
