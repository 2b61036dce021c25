"""
Unit tests for the run orchestrator (backupflow/backup/executor.py).

Runs go through real packaging into the settings' temp directory and ship to
the in-memory FakeRemote from conftest.
"""

import os
import time
from collections import namedtuple
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from backupflow.backup.executor import (
    EXIT_FAILURE,
    EXIT_INSUFFICIENT_SPACE,
    EXIT_PARTIAL,
    EXIT_SUCCESS,
    EXIT_VALIDATION,
    SECONDS_PER_DAY,
    RunOrchestrator,
    RunState,
    exit_code_for,
    is_backup_due,
    sync_destinations,
)
from backupflow.backup.lock import RunLock, LockConflictError
from backupflow.backup.profile import BackupMode, BackupProfile
from backupflow.backup.report import RunStatus

TARGET_A = 'remote-a:backups'
TARGET_B = 'remote-b:backups'

DiskUsage = namedtuple('DiskUsage', 'total used free')


def archives_with_prefix(remote, target, prefix):
    return [name for name in remote.names(target) if name.rsplit('_', 1)[0] == prefix]


class TestSuccessfulRun:
    """Test complete runs."""

    def test_end_to_end_with_retention(self, orchestrator, save_profile, source_tree, remote, archive_names):
        """Test two sources, count retention of 2 and three older archives of the first source."""
        save_profile([source_tree / 'a', source_tree / 'b'], targets=(TARGET_A,), retention=('count', 2))
        old = archive_names('a', [datetime(2023, 1, day) for day in (1, 2, 3)])
        remote.seed(TARGET_A, old)

        report = orchestrator.run()

        assert report.status is RunStatus.SUCCESS
        assert exit_code_for(report) == EXIT_SUCCESS
        a_archives = archives_with_prefix(remote, TARGET_A, 'a')
        assert len(a_archives) == 2
        assert old[2] in a_archives
        assert len(archives_with_prefix(remote, TARGET_A, 'b')) == 1
        assert report.retention[0].deleted == 2
        assert orchestrator.state is RunState.DONE

    def test_every_archive_reaches_every_target(self, orchestrator, save_profile, source_tree, remote):
        save_profile([source_tree / 'a', source_tree / 'b'], targets=(TARGET_A, TARGET_B))

        report = orchestrator.run()

        assert report.status is RunStatus.SUCCESS
        assert len(remote.names(TARGET_A)) == 2
        assert remote.names(TARGET_A) == remote.names(TARGET_B)
        assert all(len(entry.targets) == 2 for entry in report.sources)

    def test_archives_share_run_timestamp(self, orchestrator, save_profile, source_tree, remote):
        save_profile([source_tree / 'a', source_tree / 'b'])

        orchestrator.run()

        stamps = {name.rsplit('_', 1)[1] for name in remote.names(TARGET_A)}
        assert len(stamps) == 1

    def test_similar_basenames_get_distinct_prefixes(self, orchestrator, save_profile, tmp_path, remote):
        """Test /x/app and /x/app2 never share or match each other's prefix."""
        (tmp_path / 'app').mkdir()
        (tmp_path / 'app' / 'f').write_text('1')
        (tmp_path / 'app2').mkdir()
        (tmp_path / 'app2' / 'f').write_text('2')
        save_profile([tmp_path / 'app', tmp_path / 'app2'], retention=('count', 1))

        orchestrator.run()
        orchestrator.run()

        assert len(archives_with_prefix(remote, TARGET_A, 'app')) == 1
        assert len(archives_with_prefix(remote, TARGET_A, 'app2')) == 1

    def test_single_strategy_one_archive(self, orchestrator, save_profile, source_tree, remote):
        save_profile([source_tree / 'a', source_tree / 'b'], strategy='single', compression_format='tar.gz')

        report = orchestrator.run()

        assert len(report.sources) == 1
        assert report.sources[0].source == 'all sources'
        assert remote.names(TARGET_A)[0].startswith('all_sources_')
        assert remote.names(TARGET_A)[0].endswith('.tar.gz')

    def test_timestamp_updated(self, orchestrator, save_profile, source_tree, store):
        save_profile([source_tree / 'a'])
        before = int(time.time())

        orchestrator.run()

        assert store.load().last_run_timestamp >= before

    def test_temp_dir_removed(self, orchestrator, save_profile, source_tree, settings):
        save_profile([source_tree / 'a', source_tree / 'b'])

        orchestrator.run()

        assert os.listdir(settings.TEMP_DIR) == []
        assert orchestrator.temp_dir is None

    def test_report_delivered_and_recorded(self, orchestrator, save_profile, source_tree, notifier, history):
        save_profile([source_tree / 'a'])

        report = orchestrator.run(trigger='scheduled')

        notifier.send.assert_called_once_with(report)
        runs = history.recent()
        assert len(runs) == 1
        assert runs[0].trigger == 'scheduled'
        assert runs[0].status == 'success'
        assert runs[0].archives_count == 1
        assert 'Starting backup run' in runs[0].logs


class TestPartialFailure:
    """Test tolerance of individual failures."""

    def test_one_target_failing_for_one_source(self, orchestrator, save_profile, source_tree, remote, store):
        save_profile([source_tree / 'a', source_tree / 'b'], targets=(TARGET_A, TARGET_B))
        remote.failing_archives.add((TARGET_A, 'a'))

        report = orchestrator.run()

        assert report.status is RunStatus.PARTIAL_SUCCESS
        assert exit_code_for(report) == EXIT_PARTIAL
        # Target B still received the archive target A rejected
        assert archives_with_prefix(remote, TARGET_B, 'a')
        assert archives_with_prefix(remote, TARGET_A, 'b')
        assert store.load().last_run_timestamp > 0

    def test_missing_source_is_partial(self, orchestrator, save_profile, source_tree):
        save_profile([source_tree / 'a', source_tree / 'gone'])

        report = orchestrator.run()

        assert report.status is RunStatus.PARTIAL_SUCCESS
        assert not report.sources[1].packaged
        assert 'does not exist' in report.sources[1].error

    def test_verification_failure_is_partial(self, orchestrator, save_profile, source_tree, remote):
        save_profile([source_tree / 'a'], targets=(TARGET_A, TARGET_B))
        remote.failing_verify.add(TARGET_B)

        report = orchestrator.run()

        assert report.status is RunStatus.PARTIAL_SUCCESS
        assert report.sources[0].targets[1].verified is False

    def test_verify_error_only_fails_that_target(self, orchestrator, save_profile, source_tree, remote):
        """Test an unexpected error while verifying still tries the next target."""
        save_profile([source_tree / 'a'], targets=(TARGET_A, TARGET_B))
        remote.verify_errors[TARGET_A] = PermissionError('digest read denied')

        report = orchestrator.run()

        assert report.status is RunStatus.PARTIAL_SUCCESS
        assert [r.succeeded for r in report.sources[0].targets] == [False, True]
        assert archives_with_prefix(remote, TARGET_B, 'a')

    def test_notification_failure_does_not_change_outcome(self, orchestrator, save_profile, source_tree,
                                                          notifier):
        save_profile([source_tree / 'a'])
        notifier.send.side_effect = RuntimeError('smtp exploded')

        report = orchestrator.run()

        assert report.status is RunStatus.SUCCESS


class TestFailedRun:
    """Test runs where nothing was delivered."""

    def test_no_upload_means_no_retention(self, orchestrator, save_profile, source_tree, remote, archive_names,
                                          store):
        save_profile([source_tree / 'a'], targets=(TARGET_A, TARGET_B), retention=('count', 1))
        remote.seed(TARGET_A, archive_names('a', [datetime(2023, 1, day) for day in (1, 2, 3)]))
        remote.failing_copy.update({TARGET_A, TARGET_B})

        report = orchestrator.run()

        assert report.status is RunStatus.FAILURE
        assert exit_code_for(report) == EXIT_FAILURE
        assert report.retention_skipped
        assert remote.deletes == []
        assert len(remote.names(TARGET_A)) == 3
        assert store.load().last_run_timestamp == 0

    def test_all_sources_missing(self, orchestrator, save_profile, tmp_path, remote):
        save_profile([tmp_path / 'nothing-here'])

        report = orchestrator.run()

        assert report.status is RunStatus.FAILURE
        assert report.failure_reason == 'No archive was delivered to any target'
        assert remote.copies == []


class TestAbortedRun:
    """Test validation aborts."""

    def test_no_sources(self, orchestrator, save_profile, notifier, history, remote):
        save_profile([])

        report = orchestrator.run()

        assert report.aborted
        assert report.failure_reason == 'No backup sources configured'
        assert exit_code_for(report) == EXIT_VALIDATION
        assert orchestrator.state is RunState.ABORTED
        assert remote.copies == []
        notifier.send.assert_called_once()
        assert history.recent()[0].status == 'failure'

    def test_no_enabled_targets(self, orchestrator, store, source_tree):
        store.save(BackupProfile(sources=[str(source_tree / 'a')]))

        report = orchestrator.run()

        assert report.failure_reason == 'No enabled backup targets'

    def test_unreadable_profile(self, orchestrator, settings):
        with open(settings.CONFIG_FILE, 'w') as f:
            f.write('{"schema_version": 99}')

        report = orchestrator.run()

        assert report.aborted
        assert exit_code_for(report) == EXIT_VALIDATION

    @patch('backupflow.backup.compression.shutil.disk_usage', return_value=DiskUsage(100, 100, 0))
    def test_insufficient_space(self, mock_usage, orchestrator, save_profile, source_tree, remote, settings):
        save_profile([source_tree / 'b'], space_check=True)

        report = orchestrator.run()

        assert report.abort_kind == 'insufficient_space'
        assert exit_code_for(report) == EXIT_INSUFFICIENT_SPACE
        assert remote.copies == []
        assert os.listdir(settings.TEMP_DIR) == []

    @pytest.mark.parametrize("space_check", [False, True])
    def test_unusable_temp_dir(self, space_check, orchestrator, save_profile, source_tree, settings,
                               remote, notifier, history):
        """Test a temp directory that cannot be created aborts with a report."""
        blocker = source_tree.parent / 'not-a-dir'
        blocker.write_text('x')
        settings.TEMP_DIR = str(blocker / 'temp')
        save_profile([source_tree / 'a'], space_check=space_check)

        report = orchestrator.run()

        assert report.aborted
        assert exit_code_for(report) == EXIT_VALIDATION
        assert 'temp' in report.failure_reason.lower()
        assert remote.copies == []
        notifier.send.assert_called_once()
        assert history.recent()[0].status == 'failure'
        assert not os.path.exists(settings.LOCK_FILE)

    def test_undecryptable_password(self, orchestrator, save_profile, source_tree, store):
        profile = save_profile([source_tree / 'a'])
        profile.compression.password = 'enc:Z2FyYmFnZQ=='
        store.save(profile)

        report = orchestrator.run()

        assert report.aborted
        assert 'Cannot decrypt archive password' in report.failure_reason


class TestLocking:
    """Test mutual exclusion of runs."""

    def test_conflict_changes_nothing(self, orchestrator, save_profile, source_tree, settings, remote,
                                      notifier, history):
        save_profile([source_tree / 'a'])
        with open(settings.CONFIG_FILE, 'rb') as f:
            before = f.read()

        with RunLock(settings.LOCK_FILE):
            with pytest.raises(LockConflictError):
                orchestrator.run()

        with open(settings.CONFIG_FILE, 'rb') as f:
            assert f.read() == before
        assert remote.copies == []
        notifier.send.assert_not_called()
        assert history.recent() == []

    def test_lock_released_after_run(self, orchestrator, save_profile, source_tree, settings):
        save_profile([source_tree / 'a'])

        orchestrator.run()

        assert not os.path.exists(settings.LOCK_FILE)


class TestCancellation:
    """Test interruption in the middle of an upload."""

    @pytest.mark.parametrize("interrupt", [SystemExit(143), KeyboardInterrupt()])
    def test_interrupt_cleans_up(self, interrupt, orchestrator, save_profile, source_tree, remote, settings):
        save_profile([source_tree / 'a', source_tree / 'b'])

        def interrupted():
            raise interrupt

        remote.copy_hooks[TARGET_A] = interrupted

        with pytest.raises(type(interrupt)):
            orchestrator.run()

        assert [name for name in os.listdir(settings.TEMP_DIR) if name.startswith('backupflow_')] == []
        assert not os.path.exists(settings.LOCK_FILE)
        assert orchestrator.temp_dir is None


class TestAutoBackup:
    """Test interval-driven runs."""

    @freeze_time('2024-06-01 12:00:00')
    def test_not_due(self, orchestrator, save_profile, source_tree, remote, store, notifier):
        last = int(time.time()) - SECONDS_PER_DAY
        save_profile([source_tree / 'a'], auto_backup_interval_days=7, last_run_timestamp=last)

        assert orchestrator.check_auto() is None
        assert remote.copies == []
        assert store.load().last_run_timestamp == last
        notifier.send.assert_not_called()

    @freeze_time('2024-06-01 12:00:00')
    def test_due_after_interval(self, orchestrator, save_profile, source_tree, store):
        now = int(time.time())
        save_profile([source_tree / 'a'], auto_backup_interval_days=7,
                     last_run_timestamp=now - 7 * SECONDS_PER_DAY)

        report = orchestrator.check_auto()

        assert report.trigger == 'auto'
        assert report.status is RunStatus.SUCCESS
        assert store.load().last_run_timestamp == now

    def test_never_run_is_due(self, orchestrator, save_profile, source_tree):
        save_profile([source_tree / 'a'])

        assert orchestrator.check_auto(trigger='scheduled').trigger == 'scheduled'

    def test_broken_profile_reported(self, orchestrator, settings, notifier):
        with open(settings.CONFIG_FILE, 'w') as f:
            f.write('{"schema_version": 99}')

        report = orchestrator.check_auto()

        assert report.aborted
        notifier.send.assert_called_once()

    @freeze_time('2024-06-01 12:00:00')
    def test_empty_sources_reported_even_when_not_due(self, orchestrator, save_profile, notifier, history):
        """Test a profile with nothing to back up is never hidden behind the interval."""
        save_profile([], auto_backup_interval_days=7, last_run_timestamp=int(time.time()) - SECONDS_PER_DAY)

        report = orchestrator.check_auto()

        assert report.aborted
        assert report.failure_reason == 'No backup sources configured'
        assert exit_code_for(report) == EXIT_VALIDATION
        notifier.send.assert_called_once()
        assert history.recent()[0].status == 'failure'

    @freeze_time('2024-06-01 12:00:00')
    def test_no_enabled_targets_reported_even_when_not_due(self, orchestrator, store, source_tree):
        store.save(BackupProfile(sources=[str(source_tree / 'a')], auto_backup_interval_days=7,
                                 last_run_timestamp=int(time.time()) - SECONDS_PER_DAY))

        report = orchestrator.check_auto()

        assert exit_code_for(report) == EXIT_VALIDATION
        assert report.failure_reason == 'No enabled backup targets'

    def test_is_backup_due(self):
        profile = BackupProfile(auto_backup_interval_days=2, last_run_timestamp=1000)

        assert not is_backup_due(profile, now=1000 + SECONDS_PER_DAY)
        assert is_backup_due(profile, now=1000 + 2 * SECONDS_PER_DAY)
        assert is_backup_due(BackupProfile(), now=0)


class TestDefaults:
    """Test wiring of default collaborators."""

    def test_default_history_and_notifier(self, settings):
        orchestrator = RunOrchestrator(settings)

        assert orchestrator.notifier.channels == []
        assert orchestrator.history.recent() == []
        assert os.path.exists(os.path.join(settings.DATA_DIR, 'history.db'))

    def test_exit_code_when_not_due(self):
        assert exit_code_for(None) == EXIT_SUCCESS


class TestSyncMode:
    """Test runs that mirror sources instead of archiving them."""

    def test_sources_mirrored_to_every_target(self, orchestrator, save_profile, source_tree, remote, settings,
                                              store):
        save_profile([source_tree / 'a', source_tree / 'b'], targets=(TARGET_A, TARGET_B),
                     backup_mode=BackupMode.SYNC)

        report = orchestrator.run()

        assert report.status is RunStatus.SUCCESS
        assert report.backup_mode == 'sync'
        assert remote.copies == []
        assert remote.syncs == [
            (TARGET_A, str(source_tree / 'a'), 'a'),
            (TARGET_B, str(source_tree / 'a'), 'a'),
            (TARGET_A, str(source_tree / 'b'), 'b'),
            (TARGET_B, str(source_tree / 'b'), 'b'),
        ]
        assert os.listdir(settings.TEMP_DIR) == []
        assert store.load().last_run_timestamp > 0

    def test_retention_never_applies(self, orchestrator, save_profile, source_tree, remote, archive_names):
        save_profile([source_tree / 'a'], retention=('count', 1), backup_mode=BackupMode.SYNC)
        remote.seed(TARGET_A, archive_names('a', [datetime(2023, 1, day) for day in (1, 2, 3)]))

        report = orchestrator.run()

        assert report.status is RunStatus.SUCCESS
        assert remote.deletes == []
        assert report.retention == ()
        assert not report.retention_skipped

    def test_missing_source_and_failing_target(self, orchestrator, save_profile, source_tree, remote, tmp_path):
        save_profile([source_tree / 'a', tmp_path / 'missing'], targets=(TARGET_A, TARGET_B),
                     backup_mode=BackupMode.SYNC)
        remote.failing_copy.add(TARGET_B)

        report = orchestrator.run()

        assert report.status is RunStatus.PARTIAL_SUCCESS
        assert exit_code_for(report) == EXIT_PARTIAL
        first, second = report.sources
        assert [r.succeeded for r in first.targets] == [True, False]
        assert second.error == 'Path does not exist'
        assert [target for target, _, _ in remote.syncs] == [TARGET_A, TARGET_B]

    def test_every_target_failing(self, orchestrator, save_profile, source_tree, remote, store):
        save_profile([source_tree / 'a'], backup_mode=BackupMode.SYNC)
        remote.failing_copy.add(TARGET_A)

        report = orchestrator.run()

        assert report.status is RunStatus.FAILURE
        assert report.failure_reason == 'No source was synced to any target'
        assert store.load().last_run_timestamp == 0

    def test_sync_destinations_disambiguate_basenames(self):
        assert sync_destinations(['/x/app', '/y/app', '/z/app/', '/data/photos']) == {
            '/x/app': 'app',
            '/y/app': 'app-2',
            '/z/app/': 'app-3',
            '/data/photos': 'photos',
        }
