"""
Restore of archives from a target.

Restore only handles archives produced by backup runs (``.zip`` and
``.tar.gz``). It holds the run lock for its whole duration so it never
overlaps a backup run.
"""

import os
import shutil
import logging
import tarfile
import zipfile
import tempfile
from typing import List, Optional

from backupflow.utils.crypto import SecretBox
from .lock import RunLock
from .profile import ConfigStore, RemoteTarget
from .compression import parse_archive_filename
from .storage import Transport, BandwidthThrottle, create_transport

logger = logging.getLogger(__name__)


class RestoreError(Exception):
    """Raised when an archive cannot be downloaded, listed or extracted."""
    pass


class PasswordRequiredError(RestoreError):
    """Raised when a zip archive is encrypted and no (or a wrong) password was given."""
    pass


def is_archive_name(name: str) -> bool:
    return name.endswith('.zip') or name.endswith('.tar.gz')


def list_archives(transport: Transport) -> List[str]:
    """
    Archives on a target, newest first.

    Names following the naming convention are ordered by their embedded
    timestamp; any other archive files follow in reverse name order.
    """
    names = [entry.name for entry in transport.list() if is_archive_name(entry.name)]

    conventional = sorted(
        (n for n in names if parse_archive_filename(n)),
        key=lambda n: (parse_archive_filename(n)[1], n),
        reverse=True
    )
    others = sorted((n for n in names if not parse_archive_filename(n)), reverse=True)
    return conventional + others


def download_archive(transport: Transport, name: str, dest_dir: str,
                     throttle: BandwidthThrottle = None) -> str:
    """
    Download ``name`` into ``dest_dir``.

    Returns:
        Local path of the downloaded archive

    Raises:
        StorageError: If the transfer fails
    """
    os.makedirs(dest_dir, exist_ok=True)
    local_path = os.path.join(dest_dir, os.path.basename(name))
    logger.info(f"Downloading {transport.ref(name)}")
    transport.download(name, local_path, throttle or BandwidthThrottle())
    return local_path


def extract_archive(archive_path: str, dest: str, password: Optional[str] = None):
    """
    Extract an archive into ``dest``.

    Args:
        archive_path: Local archive
        dest: Destination directory (created if missing)
        password: Password for encrypted zip archives

    Raises:
        PasswordRequiredError: If the zip is encrypted and the password is missing or wrong
        RestoreError: If the archive is unreadable or of unknown format
    """
    os.makedirs(dest, exist_ok=True)
    try:
        if archive_path.endswith('.zip'):
            with zipfile.ZipFile(archive_path) as zipf:
                encrypted = any(info.flag_bits & 0x1 for info in zipf.infolist())
                if encrypted and not password:
                    raise PasswordRequiredError(f"{os.path.basename(archive_path)} is password protected")
                try:
                    zipf.extractall(dest, pwd=password.encode() if password else None)
                except RuntimeError as e:
                    # zipfile reports a bad password as RuntimeError
                    raise PasswordRequiredError(f"Wrong password or corrupt archive: {e}")
        elif archive_path.endswith('.tar.gz'):
            with tarfile.open(archive_path, 'r:gz') as tar:
                tar.extractall(dest, filter='data')
        else:
            raise RestoreError(f"Unknown archive format: {archive_path}")
    except (zipfile.BadZipFile, tarfile.TarError, OSError) as e:
        raise RestoreError(f"Failed to extract {os.path.basename(archive_path)}: {e}")

    logger.info(f"Extracted {os.path.basename(archive_path)} to {dest}")


def list_archive_contents(archive_path: str) -> List[str]:
    """
    Member names of an archive.

    Raises:
        RestoreError: If the archive is unreadable or of unknown format
    """
    try:
        if archive_path.endswith('.zip'):
            with zipfile.ZipFile(archive_path) as zipf:
                return zipf.namelist()
        elif archive_path.endswith('.tar.gz'):
            with tarfile.open(archive_path, 'r:gz') as tar:
                return tar.getnames()
    except (zipfile.BadZipFile, tarfile.TarError, OSError) as e:
        raise RestoreError(f"Failed to read {os.path.basename(archive_path)}: {e}")
    raise RestoreError(f"Unknown archive format: {archive_path}")


class RestoreSession:
    """
    Restore workflow bound to one target of the profile.

    Usable as a context manager; holds the run lock and a private download
    directory until closed.
    """

    def __init__(self, settings, target_name: str, transport: Transport = None):
        """
        Initialize restore session.

        Args:
            settings: Config instance
            target_name: ``remote:path`` or remote name of a configured target
            transport: Optional transport override (defaults to the target's backend)
        """
        self.settings = settings
        self.lock = RunLock(settings.LOCK_FILE)
        self.profile = ConfigStore(settings.CONFIG_FILE, settings.LEGACY_CONFIG_FILE).load()
        self.target: RemoteTarget = self.profile.find_target(target_name)
        self.transport = transport
        self.throttle = BandwidthThrottle(self.profile.bandwidth_limit)
        self.download_dir = None

    def __enter__(self):
        self.lock.acquire()
        try:
            if self.transport is None:
                self.transport = create_transport(
                    self.target, SecretBox(self.settings.SECRET_KEY_FILE),
                    self.settings.RCLONE_BINARY, self.profile.transfer_timeout_seconds
                )
            os.makedirs(self.settings.TEMP_DIR, exist_ok=True)
            self.download_dir = tempfile.mkdtemp(prefix='backupflow_restore_', dir=self.settings.TEMP_DIR)
        except Exception:
            self.lock.release()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.download_dir and os.path.exists(self.download_dir):
            shutil.rmtree(self.download_dir, ignore_errors=True)
        self.lock.release()
        return False

    def archives(self) -> List[str]:
        return list_archives(self.transport)

    def fetch(self, name: str) -> str:
        return download_archive(self.transport, name, self.download_dir, self.throttle)

    def restore(self, name: str, dest: str, password: Optional[str] = None) -> str:
        """Download ``name`` and extract it into ``dest``; returns ``dest``."""
        extract_archive(self.fetch(name), dest, password)
        return dest

    def contents(self, name: str) -> List[str]:
        return list_archive_contents(self.fetch(name))
