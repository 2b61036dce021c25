"""
Shared pytest fixtures for backupflow tests.

This module provides fixtures for:
- Settings pointing at a temporary config/data/temp tree
- Profile factory saving a profile document
- In-memory remote (FakeRemote / FakeTransport) for orchestrator tests
- Orchestrator wired to the fake remote, a mock notifier and in-memory history
- Mock fixtures for external services (S3, SSH)
- Temporary source tree fixtures
"""

from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from backupflow.config import get_config
from backupflow.history import HistoryStore
from backupflow.backup.executor import RunOrchestrator
from backupflow.backup.profile import (
    BackupProfile,
    ConfigStore,
    RemoteTarget,
    RetentionPolicy,
    PackagingStrategy,
    CompressionOptions,
)
from backupflow.backup.storage import Transport, RemoteEntry, StorageError


class FakeRemote:
    """
    In-memory stand-in for every remote of a test.

    Files are kept per target name. Failures are injected per target name via
    the ``failing_*`` sets (``failing_archives`` holds
    ``(target_name, archive_prefix)`` pairs); ``verify_errors`` maps a target
    name to the exception its verify raises and ``copy_hooks`` to a callable
    run at the start of each copy. Every copy, sync and delete is recorded.
    """

    def __init__(self):
        self.files = {}
        self.failing_copy = set()
        self.failing_archives = set()
        self.failing_verify = set()
        self.failing_delete = set()
        self.failing_list = set()
        self.verify_errors = {}
        self.copy_hooks = {}
        self.syncs = []
        self.copies = []
        self.deletes = []

    def factory(self, target: RemoteTarget) -> 'FakeTransport':
        return FakeTransport(target, self)

    def seed(self, target_name: str, names):
        store = self.files.setdefault(target_name, {})
        for name in names:
            store[name] = b'old archive'

    def names(self, target_name: str):
        return sorted(self.files.get(target_name, {}))


class FakeTransport(Transport):
    """Transport backed by a FakeRemote."""

    def __init__(self, target: RemoteTarget, remote: FakeRemote):
        super().__init__(target)
        self.remote = remote

    @property
    def _store(self):
        return self.remote.files.setdefault(self.target.name, {})

    def copy(self, local_path, name, throttle):
        self.remote.copies.append((self.target.name, name))
        if self.target.name in self.remote.copy_hooks:
            self.remote.copy_hooks[self.target.name]()
        prefix = name.rsplit('_', 1)[0]
        if self.target.name in self.remote.failing_copy or \
                (self.target.name, prefix) in self.remote.failing_archives:
            raise StorageError(f"simulated upload failure on {self.target.name}")
        with open(local_path, 'rb') as f:
            self._store[name] = f.read()

    def list(self):
        if self.target.name in self.remote.failing_list:
            raise StorageError(f"simulated listing failure on {self.target.name}")
        return [RemoteEntry(name, len(data)) for name, data in self._store.items()]

    def delete(self, name):
        self.remote.deletes.append((self.target.name, name))
        if self.target.name in self.remote.failing_delete:
            raise StorageError(f"simulated delete failure on {self.target.name}")
        if name not in self._store:
            raise StorageError(f"not found: {name}")
        del self._store[name]

    def verify(self, local_path, name):
        if self.target.name in self.remote.verify_errors:
            raise self.remote.verify_errors[self.target.name]
        if self.target.name in self.remote.failing_verify:
            return False
        with open(local_path, 'rb') as f:
            return self._store.get(name) == f.read()

    def sync(self, local_path, name, throttle):
        self.remote.syncs.append((self.target.name, local_path, name))
        if self.target.name in self.remote.failing_copy:
            raise StorageError(f"simulated sync failure on {self.target.name}")
        self._store[name] = b'synced'

    def download(self, name, local_path, throttle):
        if name not in self._store:
            raise StorageError(f"not found: {name}")
        with open(local_path, 'wb') as f:
            f.write(self._store[name])

    def test_connection(self):
        return True


@pytest.fixture
def settings(tmp_path):
    """
    Settings with config, data and temp directories under tmp_path.
    """
    settings = get_config(
        'production',
        CONFIG_DIR=str(tmp_path / 'config'),
        DATA_DIR=str(tmp_path / 'data'),
        TEMP_DIR=str(tmp_path / 'temp'),
    )
    settings.ensure_directories()
    return settings


@pytest.fixture
def store(settings):
    return ConfigStore(settings.CONFIG_FILE)


@pytest.fixture
def save_profile(store):
    """
    Factory saving a profile and returning it.

    Targets are given as names (``remote:path``), all enabled, rclone backend.
    """
    def _save(sources, targets=('remote-a:backups',), strategy='separate',
              retention=('none', 0), integrity_check=True, space_check=False,
              compression_format='zip', **fields):
        profile = BackupProfile(
            sources=[str(source) for source in sources],
            packaging_strategy=PackagingStrategy(strategy),
            compression=CompressionOptions(format=compression_format),
            integrity_check=integrity_check,
            space_check=space_check,
            retention=RetentionPolicy.parse(*retention),
            targets=[
                RemoteTarget(remote=name.split(':')[0], path=name.split(':', 1)[1])
                for name in targets
            ],
            **fields
        )
        store.save(profile)
        return profile

    return _save


@pytest.fixture
def remote():
    """Fresh in-memory remote."""
    return FakeRemote()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def history():
    """Run history in an in-memory SQLite database."""
    return HistoryStore('sqlite://')


@pytest.fixture
def orchestrator(settings, store, remote, notifier, history):
    """RunOrchestrator wired to the fake remote."""
    return RunOrchestrator(
        settings,
        store=store,
        transport_factory=remote.factory,
        notifier=notifier,
        history=history
    )


@pytest.fixture
def source_tree(tmp_path):
    """
    Create backup sources.

    Creates:
    - src/a (a single file)
    - src/b/ (directory with 3 files, one nested)
    """
    root = tmp_path / 'src'
    root.mkdir()
    (root / 'a').write_text('file a')

    b_dir = root / 'b'
    b_dir.mkdir()
    (b_dir / 'one.txt').write_text('Content 1')
    (b_dir / 'two.txt').write_text('Content 2')
    nested = b_dir / 'nested'
    nested.mkdir()
    (nested / 'three.txt').write_text('Nested content 3')

    return root


@pytest.fixture
def archive_names():
    """Factory for conventional archive names at given datetimes."""
    def _names(prefix, timestamps, ext='zip'):
        return [f"{prefix}_{ts.strftime('%Y%m%d%H%M%S')}.{ext}" for ts in timestamps]

    return _names


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns the patched class; its SFTP client is
    ``mock_ssh.return_value.open_sftp.return_value``.
    """
    with patch('backupflow.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture
def sample_archive(tmp_path):
    """
    Create a sample tar.gz archive for testing.
    """
    import tarfile

    test_dir = tmp_path / 'test_data'
    test_dir.mkdir()
    (test_dir / 'file1.txt').write_text('Content 1')
    (test_dir / 'file2.txt').write_text('Content 2')

    archive_path = tmp_path / 'test_data_20240115120000.tar.gz'
    with tarfile.open(archive_path, 'w:gz') as tar:
        tar.add(test_dir, arcname='test_data')

    return archive_path
