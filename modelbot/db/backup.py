"""
Database backup and recovery operations.

Backups are taken from the live connection through SQLite's online backup
API and verified with ``PRAGMA integrity_check`` before they are kept.
"""

from __future__ import annotations

import asyncio
import datetime
import shutil
import time
from pathlib import Path
from typing import List, Optional

import aiosqlite

from ..scheduler.scheduler_manager import SchedulerManager
from ..utils.log_context import fmt_ctx, get_logger
from .connection import ConnectionManager
from .errors import BackupError
from .models import BackupInfo, BackupKind, BackupStatus

logger = get_logger(__name__)

AUTOMATIC_BACKUP_JOB_ID = "database_automatic_backup"


class BackupManager:
    """
    Creates, lists, prunes and restores backups of the bot database.

    Keeps at most ``max_backups`` files in ``backup_directory``, newest first.
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        backup_directory: str | Path,
        max_backups: int = 10,
        scheduler: Optional[SchedulerManager] = None,
        prefix: str = "modelbot",
    ):
        self._connection_manager = connection_manager
        self.backup_directory = Path(backup_directory)
        self.max_backups = max_backups
        self._scheduler = scheduler
        self._prefix = prefix
        self._in_progress = False

    async def create_backup(self, kind: BackupKind = "manual") -> Path:
        """
        Create a timestamped, verified backup.

        Raises:
            BackupError: if a backup is already running or the copy fails.
        """
        if self._in_progress:
            raise BackupError("Backup already in progress")

        self._in_progress = True
        self._connection_manager.record_backup(BackupStatus.IN_PROGRESS)
        started = time.monotonic()
        timestamp = datetime.datetime.now().strftime("%Y%m%dT%H%M%S%f")
        backup_path = self.backup_directory / f"{self._prefix}-{kind}-{timestamp}.db"

        try:
            self.backup_directory.mkdir(parents=True, exist_ok=True)
            logger.info("Starting %s backup: %s", kind, backup_path.name)

            async with self._connection_manager.connection() as db:
                async with aiosqlite.connect(str(backup_path), check_same_thread=False) as target:
                    await db.backup(target)

            await self._verify_backup(backup_path)
        except Exception as e:
            self._connection_manager.record_backup(BackupStatus.FAILED)
            logger.error(
                "Backup failed %s",
                fmt_ctx({"kind": kind, "duration_ms": int((time.monotonic() - started) * 1000), "error": e}),
            )
            backup_path.unlink(missing_ok=True)
            raise BackupError(f"Failed to create backup: {e}") from e
        finally:
            self._in_progress = False

        self._connection_manager.record_backup(BackupStatus.SUCCESS)
        logger.info(
            "Backup completed successfully %s",
            fmt_ctx(
                {
                    "file_name": backup_path.name,
                    "size": backup_path.stat().st_size,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                    "kind": kind,
                }
            ),
        )
        self.cleanup_old_backups()
        return backup_path

    async def restore_from_backup(self, backup_path: str | Path) -> None:
        """
        Replace the database file with a verified backup and reconnect.

        The current file is first copied to ``<db>.pre-restore-<ms>.bak``.
        The store is reopened whether or not the copy succeeded.
        """
        backup_path = Path(backup_path)
        if not backup_path.exists():
            raise BackupError(f"Backup file not found: {backup_path}")

        settings = self._connection_manager.settings
        if settings.is_memory:
            raise BackupError("Cannot restore into an in-memory database")

        logger.warning("Starting database restoration from: %s", backup_path)
        await self._verify_backup(backup_path)
        await self._connection_manager.close()

        db_path = Path(settings.path)
        try:
            if db_path.exists():
                pre_restore = db_path.with_name(f"{db_path.name}.pre-restore-{int(time.time() * 1000)}.bak")
                await asyncio.to_thread(shutil.copy2, db_path, pre_restore)
                logger.info("Created pre-restoration backup: %s", pre_restore)

            await asyncio.to_thread(shutil.copy2, backup_path, db_path)
        except OSError as e:
            logger.error("Database restoration failed, reopening the current database: %s", e)
            raise BackupError(f"Failed to restore from backup: {e}") from e
        finally:
            await self._connection_manager.connect()
        logger.info("Database restoration completed successfully")

    def list_backups(self) -> List[BackupInfo]:
        """Return backups newest first."""
        if not self.backup_directory.exists():
            return []

        backups = []
        for path in self.backup_directory.glob(f"{self._prefix}-*.db"):
            stat = path.stat()
            backups.append(
                BackupInfo(
                    file_name=path.name,
                    path=str(path),
                    size=stat.st_size,
                    created=datetime.datetime.fromtimestamp(stat.st_mtime),
                    kind="manual" if "-manual-" in path.name else "automatic",
                )
            )
        return sorted(backups, key=lambda b: (b.created, b.file_name), reverse=True)

    def delete_backup(self, file_name: str) -> bool:
        path = self.backup_directory / file_name
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            logger.error("Failed to delete backup %s: %s", file_name, e)
            return False
        logger.info("Backup deleted: %s", file_name)
        return True

    def cleanup_old_backups(self) -> int:
        """Delete backups beyond ``max_backups``; returns how many were removed."""
        deleted = sum(1 for b in self.list_backups()[self.max_backups:] if self.delete_backup(b.file_name))
        if deleted:
            logger.info("Cleaned up %d old backups", deleted)
        return deleted

    def start_automatic_backups(self, interval_ms: float = 3600000) -> None:
        if self._scheduler is None:
            raise BackupError("Automatic backups need a scheduler")
        self._scheduler.add_interval_job(AUTOMATIC_BACKUP_JOB_ID, self._automatic_backup, interval_ms)
        logger.info("Automatic backups started with %sms interval", interval_ms)

    def stop_automatic_backups(self) -> None:
        if self._scheduler is not None and self._scheduler.remove_job(AUTOMATIC_BACKUP_JOB_ID):
            logger.info("Automatic backups stopped")

    async def _automatic_backup(self) -> None:
        try:
            await self.create_backup("automatic")
        except BackupError as e:
            logger.error("Automatic backup failed: %s", e)

    @staticmethod
    async def _verify_backup(backup_path: Path) -> None:
        try:
            async with aiosqlite.connect(f"file:{backup_path}?mode=ro", uri=True) as backup_db:
                async with backup_db.execute("PRAGMA integrity_check") as cursor:
                    row = await cursor.fetchone()
        except Exception as e:
            raise BackupError(f"Backup verification failed: {e}") from e

        result = row[0] if row else None
        if result != "ok":
            raise BackupError(f"Backup integrity check failed: {result}")
        logger.debug("Backup integrity verified: %s", backup_path.name)
