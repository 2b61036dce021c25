"""
Unit tests for run history (backupflow/history.py).
"""

import json
from datetime import datetime, timedelta
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from backupflow.backup.compression import Archive, PackageResult
from backupflow.backup.profile import RemoteTarget
from backupflow.backup.report import ReportBuilder
from backupflow.backup.uploader import UploadOutcome
from backupflow.history import HistoryStore

STARTED = datetime(2024, 1, 15, 12, 0, 0)


def make_report(started=STARTED, trigger='manual'):
    builder = ReportBuilder(trigger, started, source_count=2)
    archive = Archive('/data/a', 'a_20240115120000.zip', '/tmp/a.zip', 1500, 'zip', started)
    builder.record_source(PackageResult('/data/a', archive),
                          [UploadOutcome(RemoteTarget('r', 'p'), archive.file_name, True, True)])
    builder.record_source(PackageResult('/data/b', error='Path does not exist'))
    return builder.finalize(started + timedelta(seconds=3))


class TestHistoryStore:
    """Test recording and listing runs."""

    def test_record_and_read_back(self, history):
        assert history.record(make_report(), ['[2024-01-15 12:00:00] Starting backup run'])

        entry, = history.recent()
        assert entry.status == 'partial_success'
        assert entry.archives_count == 1
        assert entry.total_size_bytes == 1500
        assert entry.completed_at == STARTED + timedelta(seconds=3)
        assert entry.logs.startswith('[2024-01-15 12:00:00]')
        assert json.loads(entry.report_json)['source_count'] == 2

    def test_recent_newest_first(self, history):
        for day in (1, 3, 2):
            history.record(make_report(datetime(2024, 1, day), trigger=f'day{day}'))

        assert [entry.trigger for entry in history.recent()] == ['day3', 'day2', 'day1']
        assert len(history.recent(limit=2)) == 2

    def test_creates_database_directory(self, tmp_path):
        path = tmp_path / 'nested' / 'history.db'

        HistoryStore(f'sqlite:///{path}').record(make_report())

        assert path.exists()

    def test_write_failure_is_swallowed(self, history):
        with patch('sqlalchemy.orm.Session.commit', side_effect=OperationalError('INSERT', {}, Exception('locked'))):
            assert history.record(make_report()) is False

        assert history.recent() == []
