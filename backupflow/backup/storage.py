"""
Transports for remote backup targets.

Supports:
- RcloneTransport: any rclone remote (the default backend)
- S3Transport: S3-compatible object storage via boto3
- SFTPTransport: SSH servers via paramiko
- LocalTransport: a local or mounted directory

Each transport is bound to one RemoteTarget and addresses archives by file
name inside the target's path. The orchestrator only sees the Transport
interface.
"""

import os
import json
import stat
import time
import hashlib
import logging
import threading
import subprocess
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import boto3
import paramiko
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from .profile import RemoteTarget, BandwidthLimit

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024
MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


@dataclass
class RemoteEntry:
    """A file found directly inside a target's path."""
    name: str
    size: Optional[int] = None
    modified: Optional[datetime] = None


class BandwidthThrottle:
    """
    Run-wide bandwidth ceiling for in-process copies.

    All transfers of a run share one instance, so the ceiling holds across
    targets (and across threads, should uploads ever run in parallel).
    """

    def __init__(self, limit: BandwidthLimit = None):
        self.limit = limit or BandwidthLimit()
        self._lock = threading.Lock()
        self._next_free = 0.0

    def consume(self, nbytes: int):
        """Account for ``nbytes`` transferred, sleeping to stay under the ceiling."""
        if not self.limit.enabled or nbytes <= 0:
            return
        with self._lock:
            now = time.monotonic()
            self._next_free = max(self._next_free, now) + nbytes / self.limit.bytes_per_second
            delay = self._next_free - now
        if delay > 0:
            time.sleep(delay)

    def progress_callback(self):
        """Adapter for libraries reporting cumulative ``(transferred, total)``."""
        state = {'seen': 0}

        def callback(transferred, total=None):
            self.consume(transferred - state['seen'])
            state['seen'] = transferred

        return callback


class Transport(ABC):
    """Abstract transfer capability bound to one target."""

    def __init__(self, target: RemoteTarget):
        self.target = target

    def ref(self, name: str) -> str:
        """Human-readable reference of ``name`` on this target."""
        base = self.target.name.rstrip('/')
        return f"{base}/{name}" if self.target.path else f"{base}{name}"

    @abstractmethod
    def copy(self, local_path: str, name: str, throttle: BandwidthThrottle):
        """Upload ``local_path`` as ``name``. Raises StorageError."""

    @abstractmethod
    def list(self) -> List[RemoteEntry]:
        """List files directly inside the target path. Raises StorageError."""

    @abstractmethod
    def delete(self, name: str):
        """Delete ``name``. Raises StorageError."""

    @abstractmethod
    def verify(self, local_path: str, name: str) -> bool:
        """Return True if the remote copy of ``name`` matches ``local_path``."""

    @abstractmethod
    def download(self, name: str, local_path: str, throttle: BandwidthThrottle):
        """Download ``name`` to ``local_path``. Raises StorageError."""

    @abstractmethod
    def test_connection(self) -> bool:
        """Return True if the target is reachable. Raises StorageError."""

    def sync(self, local_path: str, name: str, throttle: BandwidthThrottle):
        """
        Mirror the local file or directory into ``name`` on the target.

        Files missing locally are removed remotely. Only rclone remotes
        support this; other backends raise StorageError.
        """
        raise StorageError(f"{self.target.backend} targets do not support sync mode")


class RcloneTransport(Transport):
    """
    Handler for rclone remotes.

    Shells out to the rclone binary; the remote itself (credentials, crypt
    wrapping, provider) is whatever ``rclone config`` defines.
    """

    def __init__(self, target: RemoteTarget, rclone_binary: str = 'rclone', timeout: Optional[int] = None):
        """
        Initialize rclone transport.

        Args:
            target: Target whose ``remote`` names an rclone remote
            rclone_binary: Name or path of the rclone executable
            timeout: Optional per-command timeout in seconds
        """
        super().__init__(target)
        self.rclone_binary = rclone_binary
        self.timeout = timeout

    @property
    def base(self) -> str:
        return f"{self.target.remote}:{self.target.path.rstrip('/')}"

    def ref(self, name: str) -> str:
        return f"{self.base}/{name}" if self.target.path else f"{self.base}{name}"

    def copy(self, local_path: str, name: str, throttle: BandwidthThrottle):
        self._run(['copyto', local_path, self.ref(name)] + self._bwlimit_args(throttle))

    def list(self) -> List[RemoteEntry]:
        output = self._run(['lsjson', '--files-only', self.base])
        try:
            items = json.loads(output or '[]')
        except json.JSONDecodeError as e:
            raise StorageError(f"Unexpected rclone lsjson output for {self.base}: {e}")

        entries = []
        for item in items:
            modified = None
            if item.get('ModTime'):
                try:
                    modified = datetime.fromisoformat(item['ModTime'].replace('Z', '+00:00'))
                except ValueError:
                    pass
            entries.append(RemoteEntry(item['Name'], item.get('Size'), modified))
        return entries

    def sync(self, local_path: str, name: str, throttle: BandwidthThrottle):
        self._run(['sync', local_path, self.ref(name)] + self._bwlimit_args(throttle))

    def delete(self, name: str):
        self._run(['deletefile', self.ref(name)])

    def verify(self, local_path: str, name: str) -> bool:
        # Compare just this file: source dir filtered to the archive, one-way
        args = [
            'check', os.path.dirname(os.path.abspath(local_path)), self.base,
            '--one-way', '--include', name
        ]
        try:
            self._run(args)
            return True
        except StorageError as e:
            logger.error(f"Integrity check failed for {self.ref(name)}: {e}")
            return False

    def download(self, name: str, local_path: str, throttle: BandwidthThrottle):
        self._run(['copyto', self.ref(name), local_path] + self._bwlimit_args(throttle))

    def test_connection(self) -> bool:
        self._run(['lsjson', '--max-depth', '1', f"{self.target.remote}:"])
        return True

    @staticmethod
    def _bwlimit_args(throttle: BandwidthThrottle) -> List[str]:
        if throttle and throttle.limit.enabled:
            return ['--bwlimit', throttle.limit.text]
        return []

    def _run(self, args: List[str]) -> str:
        command = [self.rclone_binary] + args
        logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            raise StorageError(f"rclone executable not found: {self.rclone_binary}")
        except subprocess.TimeoutExpired:
            raise StorageError(f"rclone {args[0]} timed out after {self.timeout}s")

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip().splitlines()
            raise StorageError(
                f"rclone {args[0]} failed (exit {result.returncode}): {detail[-1] if detail else 'no output'}"
            )
        return result.stdout


class S3Transport(Transport):
    """
    Handler for S3-compatible object storage.

    Target options: bucket, region, endpoint_url, access_key, secret_key.
    Archives live under the key prefix given by the target path.
    """

    def __init__(self, target: RemoteTarget, access_key: str = None, secret_key: str = None):
        """
        Initialize S3 storage handler.

        Args:
            target: Target with S3 options
            access_key: Decrypted access key (falls back to the boto3 credential chain)
            secret_key: Decrypted secret key
        """
        super().__init__(target)
        options = target.options
        self.bucket_name = options.get('bucket')
        if not self.bucket_name:
            raise StorageError(f"Target {target.name} has no bucket configured")
        self.prefix = target.path.strip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                region_name=options.get('region', 'us-east-1'),
                endpoint_url=options.get('endpoint_url') or None
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    @staticmethod
    def _transfer_config(throttle: BandwidthThrottle) -> TransferConfig:
        if throttle and throttle.limit.enabled:
            return TransferConfig(
                multipart_threshold=MULTIPART_THRESHOLD,
                max_bandwidth=throttle.limit.bytes_per_second
            )
        return TransferConfig(multipart_threshold=MULTIPART_THRESHOLD)

    def copy(self, local_path: str, name: str, throttle: BandwidthThrottle):
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")
        try:
            self.s3_client.upload_file(
                local_path, self.bucket_name, self._key(name),
                Config=self._transfer_config(throttle)
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 upload failed: {e}")

    def list(self) -> List[RemoteEntry]:
        prefix = f"{self.prefix}/" if self.prefix else ''
        try:
            entries = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix, Delimiter='/'):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(prefix):]
                    if name:
                        entries.append(RemoteEntry(name, obj['Size'], obj['LastModified']))
            return entries
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def delete(self, name: str):
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._key(name))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def verify(self, local_path: str, name: str) -> bool:
        try:
            head = self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(name))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Integrity check failed for {self.ref(name)}: {e}")
            return False

        local_size = os.path.getsize(local_path)
        if head['ContentLength'] != local_size:
            logger.error(
                f"Integrity check failed for {self.ref(name)}: size {head['ContentLength']} != {local_size}"
            )
            return False

        etag = head.get('ETag', '').strip('"')
        if etag and '-' not in etag:
            # Single-part uploads carry the MD5 as ETag
            if etag != _file_digest(local_path, 'md5'):
                logger.error(f"Integrity check failed for {self.ref(name)}: checksum mismatch")
                return False
        return True

    def download(self, name: str, local_path: str, throttle: BandwidthThrottle):
        try:
            self.s3_client.download_file(
                self.bucket_name, self._key(name), local_path,
                Config=self._transfer_config(throttle)
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 download failed: {e}")

    def test_connection(self) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class SFTPTransport(Transport):
    """
    Handler for SSH/SFTP servers.

    Target options: host, port, username, password or private_key.
    The target path is the remote directory.
    """

    def __init__(self, target: RemoteTarget, password: str = None):
        """
        Initialize SFTP transport.

        Args:
            target: Target with SSH options
            password: Decrypted SSH password (optional if using key)
        """
        super().__init__(target)
        options = target.options
        self.host = options.get('host') or options.get('hostname')
        self.port = int(options.get('port', 22))
        self.username = options.get('username')
        self.password = password
        self.private_key_path = options.get('private_key')
        self.directory = target.path.rstrip('/') or '.'

        if not self.host:
            raise StorageError(f"Target {target.name} has no host configured")

    def _remote_path(self, name: str) -> str:
        return f"{self.directory}/{name}"

    @contextmanager
    def _session(self):
        """Open an SSH connection and SFTP channel for one operation."""
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }
        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise StorageError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)

        try:
            ssh_client.connect(**connect_kwargs)
            sftp_client = ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise StorageError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise StorageError(f"Failed to connect to {self.host}: {e}")

        try:
            yield sftp_client
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"SFTP operation on {self.host} failed: {e}")
        finally:
            sftp_client.close()
            ssh_client.close()

    def copy(self, local_path: str, name: str, throttle: BandwidthThrottle):
        with self._session() as sftp:
            sftp.put(local_path, self._remote_path(name), callback=throttle.progress_callback())

    def list(self) -> List[RemoteEntry]:
        with self._session() as sftp:
            entries = []
            for item in sftp.listdir_attr(self.directory):
                if not stat.S_ISREG(item.st_mode or 0):
                    continue
                # Servers may omit mtime
                modified = datetime.fromtimestamp(item.st_mtime) if item.st_mtime is not None else None
                entries.append(RemoteEntry(item.filename, item.st_size, modified))
            return entries

    def delete(self, name: str):
        with self._session() as sftp:
            sftp.remove(self._remote_path(name))

    def verify(self, local_path: str, name: str) -> bool:
        try:
            with self._session() as sftp:
                remote_size = sftp.stat(self._remote_path(name)).st_size
        except StorageError as e:
            logger.error(f"Integrity check failed for {self.ref(name)}: {e}")
            return False

        local_size = os.path.getsize(local_path)
        if remote_size != local_size:
            logger.error(f"Integrity check failed for {self.ref(name)}: size {remote_size} != {local_size}")
            return False
        return True

    def download(self, name: str, local_path: str, throttle: BandwidthThrottle):
        with self._session() as sftp:
            sftp.get(self._remote_path(name), local_path, callback=throttle.progress_callback())

    def test_connection(self) -> bool:
        with self._session() as sftp:
            sftp.listdir(self.directory)
        return True


class LocalTransport(Transport):
    """
    Handler for a local (or mounted) directory target.

    The target path is the directory archives are stored in.
    """

    def __init__(self, target: RemoteTarget):
        super().__init__(target)
        self.base_path = Path(target.path).expanduser()

    def copy(self, local_path: str, name: str, throttle: BandwidthThrottle):
        dest_path = self.base_path / name
        temp_path = self.base_path / f".{name}.partial"
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            _throttled_copy(local_path, str(temp_path), throttle)
            os.replace(temp_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")
        finally:
            if temp_path.exists():
                temp_path.unlink()

    def list(self) -> List[RemoteEntry]:
        if not self.base_path.exists():
            return []
        try:
            entries = []
            for item in self.base_path.iterdir():
                if item.is_file() and not item.name.startswith('.'):
                    info = item.stat()
                    entries.append(RemoteEntry(item.name, info.st_size, datetime.fromtimestamp(info.st_mtime)))
            return entries
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def delete(self, name: str):
        full_path = self.base_path / name
        try:
            full_path.unlink()
        except FileNotFoundError:
            raise StorageError(f"File not found: {full_path}")
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def verify(self, local_path: str, name: str) -> bool:
        stored = self.base_path / name
        if not stored.is_file():
            logger.error(f"Integrity check failed: {stored} is missing")
            return False
        if _file_digest(local_path, 'sha256') != _file_digest(str(stored), 'sha256'):
            logger.error(f"Integrity check failed: {stored} differs from {local_path}")
            return False
        return True

    def download(self, name: str, local_path: str, throttle: BandwidthThrottle):
        try:
            _throttled_copy(str(self.base_path / name), local_path, throttle)
        except OSError as e:
            raise StorageError(f"Failed to copy {name} from {self.base_path}: {e}")

    def test_connection(self) -> bool:
        if not self.base_path.is_dir():
            raise StorageError(f"Directory does not exist: {self.base_path}")
        if not os.access(self.base_path, os.W_OK):
            raise StorageError(f"Directory is not writable: {self.base_path}")
        return True


def _throttled_copy(source: str, destination: str, throttle: BandwidthThrottle):
    with open(source, 'rb') as src, open(destination, 'wb') as dst:
        while True:
            chunk = src.read(COPY_CHUNK_SIZE)
            if not chunk:
                break
            dst.write(chunk)
            throttle.consume(len(chunk))


def _file_digest(path: str, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(COPY_CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def create_transport(target: RemoteTarget, secrets=None, rclone_binary: str = 'rclone',
                     timeout: Optional[int] = None) -> Transport:
    """
    Factory function to create the transport for a target.

    Args:
        target: Remote target
        secrets: SecretBox used to decrypt ``enc:`` option values
        rclone_binary: rclone executable for rclone targets
        timeout: Optional per-command timeout (rclone)

    Returns:
        Transport instance

    Raises:
        StorageError: If the backend is unknown or misconfigured
    """
    def secret(key):
        value = target.options.get(key)
        if value and secrets is not None:
            return secrets.decrypt(value)
        return value

    if target.backend == 'rclone':
        return RcloneTransport(target, rclone_binary, timeout)
    elif target.backend == 's3':
        return S3Transport(target, secret('access_key'), secret('secret_key'))
    elif target.backend == 'sftp':
        return SFTPTransport(target, secret('password'))
    elif target.backend == 'local':
        return LocalTransport(target)
    else:
        raise StorageError(f"Invalid backend type: {target.backend}")
