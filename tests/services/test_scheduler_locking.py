"""Tests for scheduler jobs and distributed locking."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockNotOwnedError

from loglens.services.alert_scanner import ScanReport
from loglens.services.scheduler import ALERT_SCAN_LOCK, RETENTION_SWEEP_LOCK, SchedulerService


def make_service(config, ingestion=None):
    scanner = MagicMock()
    scanner.run_scan = AsyncMock(return_value=ScanReport())
    scanner.engine.purge_expired = AsyncMock(return_value=2)
    return SchedulerService(scanner, ingestion, config)


def redis_with_lock(acquired: bool):
    mock_redis = MagicMock()
    mock_lock = AsyncMock()
    mock_lock.acquire.return_value = acquired
    mock_redis.lock.return_value = mock_lock

    async def mock_get_redis():
        return mock_redis

    return mock_get_redis, mock_redis, mock_lock


class TestSchedulerLocking:
    """Tests for distributed lock acquisition in scheduled jobs."""

    @pytest.mark.asyncio
    async def test_scan_skipped_when_lock_not_acquired(self, config):
        """Scan should skip execution when lock is held by another worker."""
        service = make_service(config)
        get_redis, _, _ = redis_with_lock(False)

        with patch("loglens.services.scheduler.get_redis", get_redis):
            await service._run_alert_scan()

        service.scanner.run_scan.assert_not_called()

    @pytest.mark.asyncio
    async def test_scan_executes_when_lock_acquired(self, config):
        """Scan should execute when lock is successfully acquired."""
        service = make_service(config)
        get_redis, mock_redis, mock_lock = redis_with_lock(True)

        with patch("loglens.services.scheduler.get_redis", get_redis):
            await service._run_alert_scan()

        service.scanner.run_scan.assert_awaited_once()
        mock_redis.lock.assert_called_once_with(ALERT_SCAN_LOCK, timeout=60, blocking=False)
        mock_lock.release.assert_called_once()

    @pytest.mark.asyncio
    async def test_lock_released_even_on_exception(self, config):
        """Lock should be released even if the job raises."""
        service = make_service(config)
        service.scanner.run_scan.side_effect = Exception("Test error")
        get_redis, _, mock_lock = redis_with_lock(True)

        with patch("loglens.services.scheduler.get_redis", get_redis):
            # Should not raise
            await service._run_alert_scan()

        mock_lock.release.assert_called_once()

    @pytest.mark.asyncio
    async def test_release_failure_is_tolerated(self, config):
        """An expired lock failing to release does not fail the job."""
        service = make_service(config)
        get_redis, _, mock_lock = redis_with_lock(True)
        mock_lock.release.side_effect = LockNotOwnedError("lock expired")

        with patch("loglens.services.scheduler.get_redis", get_redis):
            await service._run_alert_scan()

        service.scanner.run_scan.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_job_runs_without_lock_when_redis_unreachable(self, config):
        """Job should run unlocked when Redis refuses connections."""
        service = make_service(config)
        get_redis, _, mock_lock = redis_with_lock(True)
        mock_lock.acquire.side_effect = RedisConnectionError("Connection refused")

        with patch("loglens.services.scheduler.get_redis", get_redis):
            await service._run_alert_scan()

        service.scanner.run_scan.assert_awaited_once()
        mock_lock.release.assert_not_called()


class TestRetentionSweep:
    """The nightly sweep purges alerts and log records."""

    @pytest.mark.asyncio
    async def test_sweep_purges_both_stores(self, config):
        ingestion = MagicMock()
        ingestion.purge_expired = AsyncMock(return_value=10)
        service = make_service(config, ingestion)
        get_redis, mock_redis, _ = redis_with_lock(True)

        with patch("loglens.services.scheduler.get_redis", get_redis):
            await service._run_retention_sweep()

        service.scanner.engine.purge_expired.assert_awaited_once()
        ingestion.purge_expired.assert_awaited_once()
        mock_redis.lock.assert_called_once_with(RETENTION_SWEEP_LOCK, timeout=3600, blocking=False)

    @pytest.mark.asyncio
    async def test_sweep_without_ingestion(self, config):
        service = make_service(config)
        get_redis, _, _ = redis_with_lock(True)

        with patch("loglens.services.scheduler.get_redis", get_redis):
            await service._run_retention_sweep()

        service.scanner.engine.purge_expired.assert_awaited_once()


class TestJobRegistration:
    """Jobs are registered on the shared scheduler."""

    def test_jobs_registered(self, make_settings):
        service = make_service(make_settings(ALERT_SCAN_INTERVAL_SECONDS=15))

        with patch("loglens.services.scheduler.scheduler") as mock_scheduler:
            mock_scheduler.running = True
            service.start()

        job_ids = [call.kwargs["id"] for call in mock_scheduler.add_job.call_args_list]
        assert job_ids == ["alert_scan", "retention_sweep"]
        assert mock_scheduler.add_job.call_args_list[0].kwargs["misfire_grace_time"] == 15
        mock_scheduler.start.assert_not_called()
