"""
Backup inventory providers.

InMemoryBackupInventory keeps records in a dict and is used when backups are
tracked by an embedding application (and throughout the test suite).
LocalBackupInventory reads the on-disk layout written by the backup writer:

    <base_path>/<database_name>/<backup_id>/metadata.json
"""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .interfaces import BackupInventoryProvider
from .retention_errors import DeletionError, InventoryAccessError
from .retention_models import BackupFilter, BackupRecord, StorageProviderKind

METADATA_FILE = "metadata.json"


class InMemoryBackupInventory(BackupInventoryProvider):
    """Inventory held in process memory."""

    def __init__(self, backups: Optional[Iterable[BackupRecord]] = None):
        self._backups: Dict[str, BackupRecord] = {}
        self.deleted: List[str] = []
        for backup in backups or []:
            self.add(backup)

    def add(self, backup: BackupRecord):
        self._backups[backup.id] = backup

    async def list_backups(
        self,
        database_name: Optional[str] = None,
        backup_filter: Optional[BackupFilter] = None
    ) -> List[BackupRecord]:
        backups = list(self._backups.values())
        if database_name is not None:
            backups = [b for b in backups if b.database_name == database_name]
        if backup_filter is not None:
            backups = [b for b in backups if backup_filter.matches(b)]
        return backups

    async def delete_backup(self, backup_id: str) -> None:
        if self._backups.pop(backup_id, None) is not None:
            self.deleted.append(backup_id)

    def __len__(self) -> int:
        return len(self._backups)

    def __contains__(self, backup_id: str) -> bool:
        return backup_id in self._backups


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    retry=retry_if_exception_type(OSError),
    reraise=True
)
def _remove_tree(path: Path):
    """Remove a backup directory, retrying transient filesystem errors."""
    if path.exists():
        shutil.rmtree(path)


class LocalBackupInventory(BackupInventoryProvider):
    """Inventory backed by backup directories on the local filesystem."""

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)
        self.logger = logging.getLogger(__name__)

    def _database_dirs(self, database_name: Optional[str]) -> List[Path]:
        if not self.base_path.exists():
            return []
        if database_name is not None:
            path = self.base_path / database_name
            return [path] if path.is_dir() else []
        return sorted(d for d in self.base_path.iterdir() if d.is_dir())

    def _load_record(self, database_name: str, backup_dir: Path) -> Optional[BackupRecord]:
        metadata_file = backup_dir / METADATA_FILE
        if not metadata_file.exists():
            self.logger.warning(f"No metadata found for {backup_dir}, skipping")
            return None

        with open(metadata_file, 'r') as f:
            try:
                metadata = json.load(f)
            except json.JSONDecodeError as e:
                self.logger.warning(f"Unreadable metadata in {metadata_file}: {e}")
                return None

        metadata.setdefault("id", backup_dir.name)
        metadata.setdefault("database_name", database_name)
        metadata.setdefault("storage_location", str(backup_dir))
        metadata.setdefault("provider", StorageProviderKind.LOCAL.value)

        # Keep records with a bad timestamp so evaluation can report them.
        created_at = metadata.get("created_at")
        if isinstance(created_at, str):
            try:
                metadata["created_at"] = datetime.fromisoformat(created_at)
            except ValueError:
                self.logger.warning(f"Invalid created_at '{created_at}' for backup {backup_dir.name}")
                metadata["created_at"] = None

        try:
            return BackupRecord.from_dict(metadata)
        except (KeyError, ValueError, TypeError) as e:
            self.logger.warning(f"Invalid metadata for backup {backup_dir.name}: {e}")
            return None

    async def list_backups(
        self,
        database_name: Optional[str] = None,
        backup_filter: Optional[BackupFilter] = None
    ) -> List[BackupRecord]:
        backups: List[BackupRecord] = []
        try:
            for database_dir in self._database_dirs(database_name):
                for backup_dir in sorted(d for d in database_dir.iterdir() if d.is_dir()):
                    record = self._load_record(database_dir.name, backup_dir)
                    if record is None:
                        continue
                    if backup_filter is None or backup_filter.matches(record):
                        backups.append(record)
        except OSError as e:
            raise InventoryAccessError(
                "failed to list backups", cause=e,
                database=database_name or "*", base_path=str(self.base_path)
            ) from e

        self.logger.debug(f"Listed {len(backups)} backups from {self.base_path}")
        return backups

    async def list_databases(self) -> List[str]:
        try:
            return [d.name for d in self._database_dirs(None)]
        except OSError as e:
            raise InventoryAccessError("failed to list databases", cause=e, base_path=str(self.base_path)) from e

    async def delete_backup(self, backup_id: str) -> None:
        for database_dir in self._database_dirs(None):
            backup_dir = database_dir / backup_id
            if not backup_dir.is_dir():
                continue
            try:
                _remove_tree(backup_dir)
            except OSError as e:
                raise DeletionError(backup_id, cause=e, path=str(backup_dir)) from e
            self.logger.info(f"Deleted backup directory: {backup_dir}")
            return

        self.logger.debug(f"Backup {backup_id} already absent")
