"""Single entry point the bot's command handlers use to reach the database.

``DatabaseManager`` wires the connection, transaction, error and backup
components together and guarantees that every failure leaving it is a
``DataAccessError`` carrying only a user-safe message and an error id.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, NoReturn, Optional, Sequence, TypeVar

from ..config import DatabaseSettings
from ..scheduler.scheduler_manager import SchedulerManager
from ..utils.log_context import fmt_ctx, get_logger
from .backup import BackupManager
from .connection import ConnectionManager
from .error_handler import ErrorHandler
from .errors import DataAccessError, is_connection_unavailable
from .models import BackupInfo, DatabaseErrorType, ErrorStatistics, Health, OperationContext, RetryConfig
from .transactions import Operation, TransactionManager

logger = get_logger(__name__)

T = TypeVar("T")

DB_LOGGER_NAME = "modelbot.db"


class DatabaseManager:
    """Resilient access to the bot database."""

    def __init__(
        self,
        settings: DatabaseSettings,
        retry_config: Optional[RetryConfig] = None,
        reconnect_config: Optional[RetryConfig] = None,
        scheduler: Optional[SchedulerManager] = None,
        backup_manager: Optional[BackupManager] = None,
    ):
        """
        Args:
            settings: Database configuration.
            retry_config: Policy for operations and transactions.
            reconnect_config: Policy for reconnection; derived from
                ``settings.retry_attempts`` when omitted.
            scheduler: Scheduler running health checks and automatic backups.
            backup_manager: Backup collaborator; a file backup manager on the
                same connection is created when omitted.
        """
        self._settings = settings
        self._scheduler = scheduler or SchedulerManager()
        self._connection_manager = ConnectionManager(settings, reconnect_config, self._scheduler)
        self._transaction_manager = TransactionManager(self._connection_manager, retry_config)
        self._error_handler = ErrorHandler()
        self._backup_manager = backup_manager or BackupManager(
            self._connection_manager,
            settings.backup_directory,
            settings.max_backups,
            self._scheduler,
        )

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    @property
    def connection_manager(self) -> ConnectionManager:
        return self._connection_manager

    @property
    def transaction_manager(self) -> TransactionManager:
        return self._transaction_manager

    @property
    def error_handler(self) -> ErrorHandler:
        return self._error_handler

    async def initialize(self) -> None:
        """Connect, take an initial backup and start automatic backups if enabled."""
        logger.info("Initializing database manager...")
        try:
            await self._connection_manager.connect()
        except Exception as e:
            self._raise_classified(e, DatabaseErrorType.CONNECTION_LOST)

        if self._settings.enable_auto_backup:
            try:
                await self._backup_manager.create_backup("automatic")
            except Exception as e:
                logger.warning("Initial backup failed, continuing with initialization: %s", e)
            self._backup_manager.start_automatic_backups(self._settings.backup_interval_ms)

        logger.info("Database manager initialized successfully")

    async def execute_operation(
        self,
        operation: Operation[T],
        operation_name: str = "database operation",
        context: Optional[OperationContext] = None,
    ) -> T:
        """Run a single operation with retries; failures surface as ``QUERY_FAILED``."""
        try:
            return await self._transaction_manager.execute_with_retry(operation)
        except Exception as e:
            context = (context or OperationContext()).model_copy(update={"query": operation_name})
            self._raise_classified(e, DatabaseErrorType.QUERY_FAILED, context)

    async def execute_transaction(self, operation: Operation[T], context: Optional[OperationContext] = None) -> T:
        try:
            return await self._transaction_manager.execute_transaction(operation)
        except Exception as e:
            self._raise_classified(e, DatabaseErrorType.TRANSACTION_FAILED, context)

    async def execute_batch(
        self, operations: Sequence[Operation[Any]], context: Optional[OperationContext] = None
    ) -> List[Any]:
        """Run operations as one all-or-nothing transaction."""
        try:
            return await self._transaction_manager.execute_batch(operations)
        except Exception as e:
            self._raise_classified(e, DatabaseErrorType.TRANSACTION_FAILED, context)

    async def execute_transaction_with_timeout(
        self,
        operation: Operation[T],
        timeout_ms: float = 30000,
        context: Optional[OperationContext] = None,
    ) -> T:
        """Run a transaction but stop waiting after ``timeout_ms``; see TransactionManager."""
        try:
            return await self._transaction_manager.execute_transaction_with_timeout(operation, timeout_ms)
        except Exception as e:
            self._raise_classified(e, DatabaseErrorType.TRANSACTION_FAILED, context)

    def get_health(self) -> Health:
        return self._connection_manager.get_health()

    async def is_healthy(self) -> bool:
        return await self._connection_manager.is_healthy()

    async def create_backup(self) -> Path:
        try:
            return await self._backup_manager.create_backup("manual")
        except Exception as e:
            self._raise_classified(e, DatabaseErrorType.BACKUP_FAILED)

    async def restore_from_backup(self, backup_path: str | Path) -> None:
        try:
            await self._backup_manager.restore_from_backup(backup_path)
        except Exception as e:
            self._raise_classified(e, DatabaseErrorType.BACKUP_FAILED)

    def list_backups(self) -> List[BackupInfo]:
        return self._backup_manager.list_backups()

    async def reconnect(self) -> None:
        """Force a reconnection; useful for recovery from the admin side."""
        try:
            await self._connection_manager.reconnect()
        except Exception as e:
            self._raise_classified(e, DatabaseErrorType.CONNECTION_LOST)

    def get_error_statistics(self) -> ErrorStatistics:
        return self._error_handler.get_error_statistics()

    def update_config(self, **changes: Any) -> DatabaseSettings:
        """
        Apply configuration changes without a restart.

        ``retry_attempts`` is applied to both the operation and reconnection
        policies; monitoring and backup intervals are rescheduled. Changes
        to connection pragmas take effect on the next (re)connect.
        """
        old = self._settings
        new = DatabaseSettings(**{**old.model_dump(), **changes})
        self._settings = new

        if "retry_attempts" in changes:
            self._transaction_manager.update_retry_config(max_attempts=new.retry_attempts)
            self._connection_manager.update_retry_config(max_attempts=new.retry_attempts)

        self._connection_manager.update_settings(new)

        backup_changed = (
            new.enable_auto_backup != old.enable_auto_backup
            or new.backup_interval_ms != old.backup_interval_ms
        )
        if backup_changed:
            if new.enable_auto_backup:
                self._backup_manager.start_automatic_backups(new.backup_interval_ms)
            else:
                self._backup_manager.stop_automatic_backups()

        logger.info("Database configuration updated %s", fmt_ctx(changes))
        return new

    def set_debug_mode(self, enabled: bool) -> None:
        logging.getLogger(DB_LOGGER_NAME).setLevel(logging.DEBUG if enabled else logging.NOTSET)
        logger.info("Database debug mode %s", "enabled" if enabled else "disabled")

    async def close(self) -> None:
        """Stop automatic backups, close the connection, then stop the scheduler."""
        logger.info("Closing database manager...")
        self._backup_manager.stop_automatic_backups()
        await self._connection_manager.close()
        self._scheduler.shutdown()
        logger.info("Database manager closed")

    def _raise_classified(
        self,
        error: BaseException,
        error_type: DatabaseErrorType,
        context: Optional[OperationContext] = None,
    ) -> NoReturn:
        if is_connection_unavailable(error):
            error_type = DatabaseErrorType.CONNECTION_LOST
        user_message, error_id = self._error_handler.handle_error(error, error_type, context)
        raise DataAccessError(user_message, error_id, error_type) from None
