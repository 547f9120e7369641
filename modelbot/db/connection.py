"""Owner of the single aiosqlite connection to the bot's SQLite store.

Opens and reconnects the connection, validates it before handing it out,
keeps query metrics and runs the periodic health check. No other module
opens or closes the physical connection.
"""

from __future__ import annotations

import asyncio
import datetime
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Coroutine, Optional, Set

import aiosqlite

from ..config import DatabaseSettings
from ..scheduler.scheduler_manager import SchedulerManager
from ..utils.log_context import fmt_ctx, get_logger
from .errors import ConnectionUnavailableError, DatabaseConnectionError, ReconnectFailedError
from .models import BackupStatus, Health, RetryConfig

logger = get_logger(__name__)

HEALTH_CHECK_JOB_ID = "database_health_check"
ERROR_RATE_WARNING_THRESHOLD = 5.0  # percent


class ConnectionManager:
    """Connects, reconnects and monitors the one database connection."""

    def __init__(
        self,
        settings: DatabaseSettings,
        retry_config: Optional[RetryConfig] = None,
        scheduler: Optional[SchedulerManager] = None,
    ):
        self._settings = settings
        self._retry_config = retry_config or RetryConfig(
            max_attempts=settings.retry_attempts,
            base_delay_ms=1000,
            max_delay_ms=30000,
            backoff_multiplier=2.0,
        )
        self._scheduler = scheduler
        self._db: Optional[aiosqlite.Connection] = None
        self._health = Health()
        # One connection carries one transaction at a time.
        self._lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        # Set by close(); only an explicit connect() reopens the store.
        self._closed = False

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    def update_retry_config(self, **changes: Any) -> RetryConfig:
        """Replace the reconnection policy; a running sequence keeps the old one."""
        self._retry_config = self._retry_config.merge(**changes)
        logger.info("Reconnection retry configuration updated %s", fmt_ctx(self._retry_config.model_dump()))
        return self._retry_config

    def update_settings(self, settings: DatabaseSettings) -> None:
        """Apply new settings; pragmas take effect on the next connect."""
        self._settings = settings
        if self._db is None:
            return
        if settings.enable_health_monitoring:
            self.start_health_monitoring(restart=True)
        else:
            self.stop_health_monitoring()

    async def connect(self) -> None:
        """Open the connection unless one is already open. Does not retry."""
        self._closed = False
        if self._db is not None:
            logger.debug("Database connection already exists")
            return

        path = self._settings.path
        logger.info("Connecting to database: %s", path)
        conn: Optional[aiosqlite.Connection] = None
        try:
            conn = await aiosqlite.connect(
                path,
                timeout=self._settings.connection_timeout_ms / 1000,
                isolation_level=None,
                uri=path.startswith("file:"),
            )
            conn.row_factory = aiosqlite.Row
            await self._apply_pragmas(conn)
        except Exception as e:
            if conn is not None:
                await self._safe_close(conn)
            self._health.is_connected = False
            self._health.last_error = e
            logger.error("Failed to connect to database %s", fmt_ctx({"path": path, "error": e}))
            raise DatabaseConnectionError(f"Failed to connect to database {path}: {e}") from e

        self._db = conn
        self._health.is_connected = True
        self._health.last_error = None
        logger.info("Database connection established successfully")

        if self._settings.enable_health_monitoring:
            self.start_health_monitoring()

    async def _apply_pragmas(self, conn: aiosqlite.Connection) -> None:
        if self._settings.enable_wal:
            await conn.execute("PRAGMA journal_mode = WAL;")
        if self._settings.enable_foreign_keys:
            await conn.execute("PRAGMA foreign_keys = ON;")
        await conn.execute(f"PRAGMA busy_timeout = {int(self._settings.connection_timeout_ms)};")

    async def reconnect(self) -> None:
        """
        Close the current handle and reconnect with exponential backoff.

        Only one reconnection sequence runs at a time; concurrent callers wait
        for the sequence already in flight and share its outcome. The old
        handle is closed only after the unit of work holding it finishes.

        Raises:
            ReconnectFailedError: if every attempt failed.
            ConnectionUnavailableError: if the manager was closed.
        """
        task = self._reconnect_task
        if task is None or task.done():
            task = asyncio.create_task(self._reconnect_sequence())
            self._reconnect_task = task
        else:
            logger.info("Reconnection already in progress, waiting for it to finish")

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                raise ConnectionUnavailableError("Reconnection aborted because the connection was closed")
            raise

    async def _reconnect_sequence(self) -> None:
        config = self._retry_config
        logger.info("Attempting database reconnection...")
        self._raise_if_closed()
        async with self._lock:
            await self._close_handle()

        last_error: Optional[BaseException] = None
        for attempt in range(1, config.max_attempts + 1):
            self._raise_if_closed()
            try:
                await self.connect()
                logger.info("Database reconnection successful on attempt %d", attempt)
                return
            except DatabaseConnectionError as e:
                last_error = e.__cause__ or e
                logger.warning(
                    "Reconnection attempt %d/%d failed: %s", attempt, config.max_attempts, last_error
                )
                if attempt < config.max_attempts:
                    delay = config.delay_for(attempt)
                    logger.info("Waiting %sms before next reconnection attempt...", delay)
                    await asyncio.sleep(delay / 1000)

        self._health.is_connected = False
        self._health.last_error = last_error
        logger.error(
            "All %d reconnection attempts failed. Entering graceful degradation mode.",
            config.max_attempts,
        )
        raise ReconnectFailedError(config.max_attempts, last_error) from last_error

    def _raise_if_closed(self) -> None:
        if self._closed:
            raise ConnectionUnavailableError("Database connection manager is closed")

    async def is_healthy(self) -> bool:
        return self._health.is_connected and await self.validate_connection()

    async def validate_connection(self) -> bool:
        """Round-trip a trivial query; never raises."""
        db = self._db
        if db is None:
            return False

        try:
            async with db.execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
            if row is None or row[0] != 1:
                raise DatabaseConnectionError("Connection validation returned an unexpected result")
            self._ensure_database_file()
        except Exception as e:
            logger.warning("Connection validation failed: %s", e)
            self._health.is_connected = False
            self._health.last_error = e
            return False
        return True

    def _ensure_database_file(self) -> None:
        # An unlinked file stays readable through the open descriptor, so
        # SELECT 1 alone cannot notice that the store is gone.
        path = self._settings.path
        if self._settings.is_memory or path.startswith("file:"):
            return
        if not Path(path).exists():
            raise DatabaseConnectionError(f"Database file {path} no longer exists")

    async def get_database(self) -> aiosqlite.Connection:
        """Return the live handle, or fail if it is missing or unhealthy."""
        db = self._db
        if db is None or not await self.is_healthy() or self._db is not db:
            raise ConnectionUnavailableError()
        return db

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Hold the connection for one unit of work.

        Usage:
            async with connection_manager.connection() as conn:
                await conn.execute(...)
        """
        async with self._lock:
            yield await self.get_database()

    def update_query_metrics(self, execution_time_ms: float, success: bool) -> None:
        health = self._health
        health.query_count += 1
        if not success:
            health.error_count += 1
        health.average_query_time += (execution_time_ms - health.average_query_time) / health.query_count

    def record_backup(self, status: BackupStatus, timestamp: Optional[datetime.datetime] = None) -> None:
        self._health.backup_status = status
        if status is BackupStatus.SUCCESS:
            self._health.last_backup = timestamp or datetime.datetime.now()

    def get_health(self) -> Health:
        """Return a snapshot; changing it does not touch the live counters."""
        return self._health.model_copy()

    def start_health_monitoring(self, restart: bool = False) -> None:
        if self._scheduler is None:
            logger.warning("Health monitoring requested but no scheduler is configured")
            return
        if self._scheduler.has_job(HEALTH_CHECK_JOB_ID) and not restart:
            return
        interval = self._settings.health_check_interval_ms
        self._scheduler.add_interval_job(HEALTH_CHECK_JOB_ID, self.perform_health_check, interval)
        logger.debug("Health monitoring started with %sms interval", interval)

    def stop_health_monitoring(self) -> None:
        if self._scheduler is not None and self._scheduler.remove_job(HEALTH_CHECK_JOB_ID):
            logger.debug("Health monitoring stopped")

    async def perform_health_check(self) -> None:
        if self._closed:
            return
        self._health.last_health_check = datetime.datetime.now()

        if not await self.validate_connection():
            logger.warning("Health check failed - connection is unhealthy")
            if self._closed:
                return
            if self._settings.retry_attempts > 0:
                self._spawn(self._reconnect_after_failed_check())
            return

        db = self._db
        try:
            if db is not None:
                self._health.database_size = await self._database_size(db)
        except Exception as e:
            logger.debug("Could not update database size during health check: %s", e)

        error_rate = self._health.error_rate
        if error_rate > ERROR_RATE_WARNING_THRESHOLD:
            logger.warning(
                "Database error rate is %.2f%% (%d/%d queries)",
                error_rate,
                self._health.error_count,
                self._health.query_count,
            )

        logger.debug(
            "Health check completed %s",
            fmt_ctx(
                {
                    "queries": self._health.query_count,
                    "errors": self._health.error_count,
                    "avg_time_ms": f"{self._health.average_query_time:.2f}",
                }
            ),
        )

    async def _reconnect_after_failed_check(self) -> None:
        try:
            await self.reconnect()
        except Exception as e:
            logger.error("Automatic reconnection during health check failed: %s", e)
        else:
            logger.info("Automatic reconnection during health check succeeded")

    @staticmethod
    async def _database_size(db: aiosqlite.Connection) -> int:
        async with db.execute("PRAGMA page_count") as cursor:
            page_count = (await cursor.fetchone())[0]
        async with db.execute("PRAGMA page_size") as cursor:
            page_size = (await cursor.fetchone())[0]
        return page_count * page_size

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def close(self) -> None:
        """Stop the health check and release the connection. Safe to call twice."""
        logger.info("Closing database connection...")
        self._closed = True
        self.stop_health_monitoring()

        pending = [t for t in (self._reconnect_task, *self._background_tasks) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._reconnect_task = None

        async with self._lock:
            if self._db is None:
                return
            await self._close_handle()
        logger.info("Database connection closed successfully")

    async def _close_handle(self) -> None:
        db, self._db = self._db, None
        self._health.is_connected = False
        if db is not None:
            await self._safe_close(db)

    @staticmethod
    async def _safe_close(db: aiosqlite.Connection) -> None:
        try:
            await db.close()
        except Exception as e:
            logger.warning("Error closing database connection: %s", e)
