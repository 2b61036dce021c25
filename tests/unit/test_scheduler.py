"""
Unit tests for the scheduler daemon (backupflow/scheduler.py).
"""

import logging
from unittest.mock import MagicMock, patch

import pytest

from backupflow import scheduler as scheduler_module
from backupflow.backup.lock import LockConflictError
from backupflow.scheduler import (
    AUTO_BACKUP_JOB_ID,
    get_scheduled_jobs,
    init_scheduler,
    start_scheduler,
    stop_scheduler,
    _check_auto_backup_wrapper,
)


@pytest.fixture(autouse=True)
def reset_scheduler():
    """Each test starts without a scheduler."""
    scheduler_module.scheduler = None
    scheduler_module.daemon_settings = None
    yield
    if scheduler_module.scheduler is not None and scheduler_module.scheduler.running:
        scheduler_module.scheduler.shutdown(wait=False)
    scheduler_module.scheduler = None
    scheduler_module.daemon_settings = None


class TestInitScheduler:
    """Test scheduler setup."""

    def test_registers_interval_job(self, settings):
        sched = init_scheduler(settings, interval_minutes=15)

        job = sched.get_job(AUTO_BACKUP_JOB_ID)
        assert job is not None
        assert job.trigger.interval.total_seconds() == 15 * 60
        assert scheduler_module.daemon_settings is settings

    def test_default_interval(self, settings):
        sched = init_scheduler(settings)

        job = sched.get_job(AUTO_BACKUP_JOB_ID)
        assert job.trigger.interval.total_seconds() == settings.SCHEDULER_CHECK_MINUTES * 60

    def test_init_is_idempotent(self, settings):
        assert init_scheduler(settings) is init_scheduler(settings)

    def test_get_scheduled_jobs(self, settings):
        assert get_scheduled_jobs() == []

        init_scheduler(settings, interval_minutes=30)

        jobs = get_scheduled_jobs()
        assert [job['id'] for job in jobs] == [AUTO_BACKUP_JOB_ID]
        assert jobs[0]['name'] == 'Automatic backup check'


class TestStartStop:
    """Test running the scheduler."""

    def test_start_requires_init(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            start_scheduler()

    def test_start_blocks_until_interrupted(self, settings):
        init_scheduler(settings)

        with patch.object(scheduler_module.scheduler, 'start', side_effect=KeyboardInterrupt) as mock_start:
            start_scheduler()

        mock_start.assert_called_once()

    def test_stop_when_not_running(self, settings):
        init_scheduler(settings)

        stop_scheduler()

        assert not scheduler_module.scheduler.running


class TestCheckWrapper:
    """Test the job body."""

    @patch('backupflow.scheduler.check_auto_backup', return_value=None)
    def test_uses_scheduled_trigger(self, mock_check, settings):
        scheduler_module.daemon_settings = settings

        _check_auto_backup_wrapper()

        mock_check.assert_called_once_with(settings, trigger='scheduled')

    @patch('backupflow.scheduler.check_auto_backup', side_effect=LockConflictError(1234, '/tmp/x.lock'))
    def test_lock_conflict_is_skipped(self, mock_check, settings, caplog):
        scheduler_module.daemon_settings = settings

        _check_auto_backup_wrapper()

        assert 'Scheduled check skipped' in caplog.text

    @patch('backupflow.scheduler.check_auto_backup', side_effect=OSError('disk gone'))
    def test_errors_do_not_escape(self, mock_check, settings, caplog):
        scheduler_module.daemon_settings = settings

        _check_auto_backup_wrapper()

        assert 'Scheduled backup check failed' in caplog.text

    @patch('backupflow.scheduler.check_auto_backup')
    def test_reports_status(self, mock_check, settings, caplog):
        caplog.set_level(logging.INFO, logger='backupflow.scheduler')
        mock_check.return_value = MagicMock(status=MagicMock(value='success'))
        scheduler_module.daemon_settings = settings

        _check_auto_backup_wrapper()

        assert 'finished with status: success' in caplog.text
