"""Tests for the single-connection manager: lifecycle, validation, metrics, health checks."""

import asyncio
import logging
import os
from unittest.mock import AsyncMock, patch

import pytest

from conftest import nation_names
from modelbot.db.connection import HEALTH_CHECK_JOB_ID, ConnectionManager
from modelbot.db.errors import ConnectionUnavailableError, DatabaseConnectionError, ReconnectFailedError
from modelbot.db.models import BackupStatus, RetryConfig

pytestmark = pytest.mark.asyncio


def _remove_database_files(db_path):
    for suffix in ("", "-wal", "-shm"):
        path = f"{db_path}{suffix}"
        if os.path.exists(path):
            os.remove(path)


class TestConnect:
    async def test_connect_applies_pragmas(self, connection_manager):
        async with connection_manager.connection() as conn:
            async with conn.execute("PRAGMA journal_mode") as cursor:
                assert (await cursor.fetchone())[0] == "wal"
            async with conn.execute("PRAGMA foreign_keys") as cursor:
                assert (await cursor.fetchone())[0] == 1
            async with conn.execute("PRAGMA busy_timeout") as cursor:
                assert (await cursor.fetchone())[0] == 1000

    async def test_pragmas_follow_configuration(self, db_settings, fast_retry):
        settings = db_settings.model_copy(update={"enable_wal": False, "enable_foreign_keys": False})
        manager = ConnectionManager(settings, fast_retry)
        await manager.connect()
        try:
            async with manager.connection() as conn:
                async with conn.execute("PRAGMA journal_mode") as cursor:
                    assert (await cursor.fetchone())[0] != "wal"
                async with conn.execute("PRAGMA foreign_keys") as cursor:
                    assert (await cursor.fetchone())[0] == 0
        finally:
            await manager.close()

    async def test_connect_is_noop_when_connected(self, connection_manager):
        first = await connection_manager.get_database()
        await connection_manager.connect()
        assert await connection_manager.get_database() is first

    async def test_connect_failure_raises_connection_error(self, db_settings, fast_retry, tmp_path):
        settings = db_settings.model_copy(update={"path": str(tmp_path / "missing" / "db.sqlite")})
        manager = ConnectionManager(settings, fast_retry)

        with pytest.raises(DatabaseConnectionError):
            await manager.connect()

        health = manager.get_health()
        assert health.is_connected is False
        assert health.last_error is not None
        assert health.error_count == 0
        assert health.query_count == 0

    async def test_get_database_fails_fast_when_not_connected(self, db_settings, fast_retry):
        manager = ConnectionManager(db_settings, fast_retry)
        with pytest.raises(ConnectionUnavailableError):
            await manager.get_database()


class TestReconnect:
    async def test_unreachable_store_raises_terminal_error(self, db_settings, tmp_path):
        settings = db_settings.model_copy(update={"path": str(tmp_path / "missing" / "db.sqlite")})
        config = RetryConfig(max_attempts=2, base_delay_ms=10, max_delay_ms=10)
        manager = ConnectionManager(settings, config)

        with pytest.raises(ReconnectFailedError) as exc_info:
            await manager.reconnect()

        assert exc_info.value.attempts == 2
        assert exc_info.value.__cause__ is not None
        health = manager.get_health()
        assert health.is_connected is False
        assert health.last_error is exc_info.value.last_error

    async def test_reconnect_replaces_handle(self, connection_manager):
        old = await connection_manager.get_database()
        await connection_manager.reconnect()
        new = await connection_manager.get_database()
        assert new is not old
        assert await connection_manager.is_healthy()

    async def test_reconnect_succeeds_on_later_attempt(self, connection_manager):
        real_connect = connection_manager.connect
        calls = 0

        async def flaky_connect():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise DatabaseConnectionError("unable to open database file")
            await real_connect()

        with patch.object(connection_manager, "connect", side_effect=flaky_connect):
            await connection_manager.reconnect()

        assert calls == 2
        assert await connection_manager.is_healthy()

    async def test_concurrent_reconnects_share_one_sequence(self, connection_manager):
        real_connect = connection_manager.connect
        calls = 0

        async def slow_connect():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            await real_connect()

        with patch.object(connection_manager, "connect", side_effect=slow_connect):
            await asyncio.gather(connection_manager.reconnect(), connection_manager.reconnect())

        assert calls == 1
        assert await connection_manager.is_healthy()

    async def test_close_aborts_running_reconnect(self, connection_manager):
        async def never_connects():
            raise DatabaseConnectionError("unable to open database file")

        connection_manager.update_retry_config(max_attempts=5, base_delay_ms=1000, max_delay_ms=1000)
        with patch.object(connection_manager, "connect", side_effect=never_connects):
            waiter = asyncio.create_task(connection_manager.reconnect())
            await asyncio.sleep(0.05)
            await connection_manager.close()

            with pytest.raises(ConnectionUnavailableError):
                await waiter

        assert connection_manager.get_health().is_connected is False


    async def test_reconnect_waits_for_unit_of_work_in_progress(self, connection_manager):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def unit_of_work():
            async with connection_manager.connection() as conn:
                await conn.execute("BEGIN IMMEDIATE")
                await conn.execute("INSERT INTO nations (name) VALUES (?)", ("Ruritania",))
                entered.set()
                await release.wait()
                await conn.commit()

        work = asyncio.create_task(unit_of_work())
        await entered.wait()
        reconnect = asyncio.create_task(connection_manager.reconnect())
        await asyncio.sleep(0.05)
        assert not reconnect.done()

        release.set()
        await work
        await reconnect

        async with connection_manager.connection() as conn:
            assert await nation_names(conn) == ["Ruritania"]

    async def test_reconnect_after_close_is_refused(self, connection_manager):
        await connection_manager.close()

        with pytest.raises(ConnectionUnavailableError):
            await connection_manager.reconnect()
        assert connection_manager.get_health().is_connected is False

        await connection_manager.connect()
        assert await connection_manager.is_healthy()


class TestValidation:
    async def test_validate_after_file_deleted(self, connection_manager, db_path):
        _remove_database_files(db_path)

        assert await connection_manager.validate_connection() is False

        health = connection_manager.get_health()
        assert health.is_connected is False
        assert health.last_error is not None

    async def test_unhealthy_connection_is_not_handed_out(self, connection_manager, db_path):
        _remove_database_files(db_path)
        with pytest.raises(ConnectionUnavailableError):
            await connection_manager.get_database()

    async def test_validate_after_close_returns_false(self, connection_manager):
        await connection_manager.close()
        assert await connection_manager.validate_connection() is False
        assert await connection_manager.is_healthy() is False

    async def test_close_is_idempotent(self, connection_manager):
        await connection_manager.close()
        await connection_manager.close()
        with pytest.raises(ConnectionUnavailableError):
            await connection_manager.get_database()


class TestMetrics:
    async def test_rolling_average_and_counters(self, connection_manager):
        connection_manager.update_query_metrics(10, True)
        connection_manager.update_query_metrics(20, False)
        connection_manager.update_query_metrics(30, True)

        health = connection_manager.get_health()
        assert health.query_count == 3
        assert health.error_count == 1
        assert health.average_query_time == pytest.approx(20.0)
        assert health.error_count <= health.query_count

    async def test_health_snapshot_is_independent(self, connection_manager):
        connection_manager.update_query_metrics(5, True)
        snapshot = connection_manager.get_health()
        snapshot.query_count = 999
        snapshot.is_connected = False

        again = connection_manager.get_health()
        assert again.query_count == 1
        assert again.is_connected is True

    async def test_record_backup(self, connection_manager):
        connection_manager.record_backup(BackupStatus.IN_PROGRESS)
        assert connection_manager.get_health().last_backup is None

        connection_manager.record_backup(BackupStatus.SUCCESS)
        health = connection_manager.get_health()
        assert health.backup_status is BackupStatus.SUCCESS
        assert health.last_backup is not None


class TestHealthMonitoring:
    async def test_periodic_health_check_refreshes_metrics(self, db_settings, fast_retry, scheduler):
        settings = db_settings.model_copy(update={"enable_health_monitoring": True})
        manager = ConnectionManager(settings, fast_retry, scheduler)
        await manager.connect()
        started = manager.get_health().last_health_check
        try:
            assert scheduler.has_job(HEALTH_CHECK_JOB_ID)
            await asyncio.sleep(0.25)
            health = manager.get_health()
            assert health.last_health_check > started
            assert health.database_size and health.database_size > 0
        finally:
            await manager.close()

    async def test_no_health_check_fires_after_close(self, db_settings, fast_retry, scheduler):
        settings = db_settings.model_copy(update={"enable_health_monitoring": True})
        manager = ConnectionManager(settings, fast_retry, scheduler)
        await manager.connect()
        await asyncio.sleep(0.12)
        await manager.close()

        after_close = manager.get_health().last_health_check
        await asyncio.sleep(2 * settings.health_check_interval_ms / 1000 + 0.05)

        assert not scheduler.has_job(HEALTH_CHECK_JOB_ID)
        assert manager.get_health().last_health_check == after_close

    async def test_failed_check_triggers_one_reconnect(self, connection_manager):
        with patch.object(connection_manager, "validate_connection", AsyncMock(return_value=False)), \
                patch.object(connection_manager, "reconnect", AsyncMock()) as reconnect:
            await connection_manager.perform_health_check()
            await asyncio.sleep(0.01)

        reconnect.assert_awaited_once()

    async def test_failed_automatic_reconnect_is_logged(self, connection_manager, caplog):
        caplog.set_level(logging.ERROR, logger="modelbot.db.connection")
        failure = ReconnectFailedError(3, DatabaseConnectionError("unable to open database file"))
        with patch.object(connection_manager, "validate_connection", AsyncMock(return_value=False)), \
                patch.object(connection_manager, "reconnect", AsyncMock(side_effect=failure)):
            await connection_manager.perform_health_check()
            await asyncio.sleep(0.01)

        assert "Automatic reconnection during health check failed" in caplog.text

    async def test_high_error_rate_warns(self, connection_manager, caplog):
        caplog.set_level(logging.WARNING, logger="modelbot.db.connection")
        connection_manager.update_query_metrics(1, True)
        connection_manager.update_query_metrics(1, False)

        await connection_manager.perform_health_check()

        assert "error rate is 50.00%" in caplog.text

    async def test_health_check_in_flight_during_close_does_not_reopen(self, db_settings, fast_retry, scheduler):
        settings = db_settings.model_copy(
            update={"enable_health_monitoring": True, "health_check_interval_ms": 60000}
        )
        manager = ConnectionManager(settings, fast_retry, scheduler)
        await manager.connect()

        check = asyncio.create_task(manager.perform_health_check())
        await asyncio.sleep(0)
        await manager.close()
        await check
        await asyncio.sleep(0.3)

        assert manager.get_health().is_connected is False
        assert not scheduler.has_job(HEALTH_CHECK_JOB_ID)
        with pytest.raises(ConnectionUnavailableError):
            await manager.get_database()

    async def test_check_failing_after_close_does_not_reconnect(self, connection_manager):
        closed = asyncio.Event()

        async def fails_once_closed():
            await closed.wait()
            return False

        with patch.object(connection_manager, "validate_connection", side_effect=fails_once_closed), \
                patch.object(connection_manager, "reconnect", AsyncMock()) as reconnect:
            check = asyncio.create_task(connection_manager.perform_health_check())
            await asyncio.sleep(0)
            await connection_manager.close()
            closed.set()
            await check
            await asyncio.sleep(0.01)

        reconnect.assert_not_awaited()
        assert connection_manager.get_health().is_connected is False
