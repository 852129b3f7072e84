"""
Storage interfaces for the retention system.

This module provides abstract interfaces for backup inventory operations.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from .retention_models import BackupFilter, BackupRecord


class BackupCatalog(ABC):
    """Abstract interface for the set of databases that have backups."""

    @abstractmethod
    async def list_databases(self) -> List[str]:
        """Get the names of all databases known to the backup system."""
        pass


class BackupInventoryProvider(BackupCatalog):
    """Abstract interface for backup inventory storage backends."""

    @abstractmethod
    async def list_backups(
        self,
        database_name: Optional[str] = None,
        backup_filter: Optional[BackupFilter] = None
    ) -> List[BackupRecord]:
        """List backups, optionally scoped to a database and filter. Raises InventoryAccessError."""
        pass

    @abstractmethod
    async def delete_backup(self, backup_id: str) -> None:
        """Delete a backup. Deleting an already-absent backup succeeds. Raises DeletionError."""
        pass

    async def list_databases(self) -> List[str]:
        """Default catalog: every database name that has at least one backup."""
        backups = await self.list_backups()
        return sorted({backup.database_name for backup in backups})
