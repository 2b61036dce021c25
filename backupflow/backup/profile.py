"""
Backup profile: the persisted configuration a run is driven by.

The profile is a JSON document with an explicit schema version. It is loaded
once before a run, passed explicitly to every collaborator, and saved back only
after state-changing operations (the last-run timestamp, migrations).
"""

import os
import json
import logging
import tempfile
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Dict, Any, Optional

from backupflow.migrations import (
    CURRENT_SCHEMA_VERSION,
    MigrationError,
    parse_legacy_config,
    run_migrations
)
from backupflow.utils.formatters import parse_size

logger = logging.getLogger(__name__)

ARCHIVE_FORMATS = ('zip', 'tar.gz')
TARGET_BACKENDS = ('rclone', 's3', 'sftp', 'local')


class ProfileError(ValueError):
    """Raised when the profile document is unreadable or invalid."""
    pass


class PackagingStrategy(str, Enum):
    SEPARATE = 'separate'
    SINGLE = 'single'


class BackupMode(str, Enum):
    ARCHIVE = 'archive'
    SYNC = 'sync'


class RetentionKind(str, Enum):
    NONE = 'none'
    COUNT = 'count'
    DAYS = 'days'


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention rule applied uniformly to every enabled target."""
    kind: RetentionKind = RetentionKind.NONE
    keep: int = 0

    @classmethod
    def parse(cls, policy: str, value: int = 0) -> 'RetentionPolicy':
        try:
            kind = RetentionKind(policy)
        except ValueError:
            raise ProfileError(f"Unknown retention policy: {policy!r}")

        if kind is RetentionKind.NONE:
            return cls()

        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ProfileError(f"Retention value must be an integer >= 1 for policy '{policy}', got {value!r}")
        return cls(kind, value)

    def describe(self) -> str:
        if self.kind is RetentionKind.COUNT:
            return f"keep the newest {self.keep}"
        if self.kind is RetentionKind.DAYS:
            return f"keep the last {self.keep} days"
        return "keep everything"


@dataclass(frozen=True)
class BandwidthLimit:
    """Shared transfer ceiling; ``text`` is the rclone spelling, e.g. ``8M``."""
    text: str = ''
    bytes_per_second: Optional[int] = None

    @classmethod
    def parse(cls, text: str) -> 'BandwidthLimit':
        text = (text or '').strip()
        if not text or text.lower() == 'off':
            return cls()
        try:
            rate = parse_size(text)
        except ValueError:
            raise ProfileError(f"Invalid bandwidth limit: {text!r} (use e.g. 8M or 512K)")
        if rate <= 0:
            raise ProfileError(f"Bandwidth limit must be positive: {text!r}")
        return cls(text, rate)

    @property
    def enabled(self) -> bool:
        return self.bytes_per_second is not None


@dataclass
class CompressionOptions:
    format: str = 'zip'
    level: int = 6
    password: str = ''

    @property
    def extension(self) -> str:
        return self.format


@dataclass
class RemoteTarget:
    """A remote location eligible to receive archives."""
    remote: str
    path: str = ''
    enabled: bool = True
    origin: str = 'manual'
    backend: str = 'rclone'
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"{self.remote}:{self.path}"

    def __str__(self):
        return self.name


@dataclass
class BackupProfile:
    """Typed view of the profile document."""
    sources: List[str] = field(default_factory=list)
    backup_mode: BackupMode = BackupMode.ARCHIVE
    packaging_strategy: PackagingStrategy = PackagingStrategy.SEPARATE
    compression: CompressionOptions = field(default_factory=CompressionOptions)
    integrity_check: bool = True
    space_check: bool = True
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    bandwidth_limit: BandwidthLimit = field(default_factory=BandwidthLimit)
    auto_backup_interval_days: int = 7
    transfer_timeout_seconds: Optional[int] = None
    last_run_timestamp: int = 0
    targets: List[RemoteTarget] = field(default_factory=list)

    def enabled_targets(self) -> List[RemoteTarget]:
        """Enabled targets in delivery (enable) order."""
        return [target for target in self.targets if target.enabled]

    def find_target(self, name: str) -> RemoteTarget:
        """Look up a target by ``remote:path`` or bare remote name."""
        for target in self.targets:
            if name in (target.name, target.remote, f"{target.remote}:"):
                return target
        raise ProfileError(f"No such target: {name}")

    def validate(self):
        """
        Check profile invariants.

        Raises:
            ProfileError: On the first violated invariant
        """
        seen = set()
        for source in self.sources:
            if not os.path.isabs(source):
                raise ProfileError(f"Backup source must be an absolute path: {source}")
            normalized = os.path.normpath(source)
            if normalized in seen:
                raise ProfileError(f"Duplicate backup source: {source}")
            seen.add(normalized)

        if self.compression.format not in ARCHIVE_FORMATS:
            raise ProfileError(
                f"Invalid compression format: {self.compression.format}. Valid options: {list(ARCHIVE_FORMATS)}"
            )
        if not isinstance(self.compression.level, int) or not 1 <= self.compression.level <= 9:
            raise ProfileError(f"Compression level must be between 1 and 9, got {self.compression.level!r}")
        if self.compression.password and self.compression.format != 'zip':
            raise ProfileError("Archive passwords are only supported with the zip format")

        if not isinstance(self.auto_backup_interval_days, int) or self.auto_backup_interval_days < 1:
            raise ProfileError("auto_backup_interval_days must be an integer >= 1")
        if self.transfer_timeout_seconds is not None and self.transfer_timeout_seconds < 1:
            raise ProfileError("transfer_timeout_seconds must be >= 1 when set")

        names = set()
        for target in self.targets:
            if not target.remote:
                raise ProfileError("Target is missing its remote name")
            if target.backend not in TARGET_BACKENDS:
                raise ProfileError(f"Unknown backend '{target.backend}' for target {target.name}")
            if target.name in names:
                raise ProfileError(f"Duplicate target: {target.name}")
            names.add(target.name)
            if self.backup_mode is BackupMode.SYNC and target.enabled and target.backend != 'rclone':
                raise ProfileError(f"Sync mode needs rclone targets; {target.name} uses {target.backend}")

    @classmethod
    def from_dict(cls, document: Dict[str, Any]) -> 'BackupProfile':
        """
        Build a profile from a current-version document.

        Raises:
            ProfileError: If a field has the wrong type or value
        """
        try:
            compression = document.get('compression', {})
            retention = document.get('retention', {})
            profile = cls(
                sources=list(document.get('sources', [])),
                backup_mode=BackupMode(document.get('backup_mode', 'archive')),
                packaging_strategy=PackagingStrategy(document.get('packaging_strategy', 'separate')),
                compression=CompressionOptions(
                    format=compression.get('format', 'zip'),
                    level=compression.get('level', 6),
                    password=compression.get('password', '') or '',
                ),
                integrity_check=bool(document.get('integrity_check', True)),
                space_check=bool(document.get('space_check', True)),
                retention=RetentionPolicy.parse(retention.get('policy', 'none'), retention.get('value', 0)),
                bandwidth_limit=BandwidthLimit.parse(document.get('bandwidth_limit', '')),
                auto_backup_interval_days=document.get('auto_backup_interval_days', 7),
                transfer_timeout_seconds=document.get('transfer_timeout_seconds'),
                last_run_timestamp=int(document.get('last_run_timestamp', 0) or 0),
                targets=[
                    RemoteTarget(
                        remote=target['remote'],
                        path=target.get('path', ''),
                        enabled=bool(target.get('enabled', True)),
                        origin=target.get('origin', 'manual'),
                        backend=target.get('backend', 'rclone'),
                        options=dict(target.get('options', {})),
                    )
                    for target in document.get('targets', [])
                ],
            )
        except ProfileError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ProfileError(f"Invalid profile document: {e}")

        profile.validate()
        return profile

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schema_version': CURRENT_SCHEMA_VERSION,
            'sources': list(self.sources),
            'backup_mode': self.backup_mode.value,
            'packaging_strategy': self.packaging_strategy.value,
            'compression': asdict(self.compression),
            'integrity_check': self.integrity_check,
            'space_check': self.space_check,
            'retention': {'policy': self.retention.kind.value, 'value': self.retention.keep},
            'bandwidth_limit': self.bandwidth_limit.text,
            'auto_backup_interval_days': self.auto_backup_interval_days,
            'transfer_timeout_seconds': self.transfer_timeout_seconds,
            'last_run_timestamp': self.last_run_timestamp,
            'targets': [asdict(target) for target in self.targets],
        }


class ConfigStore:
    """
    Loads and saves the profile document.

    Saves are write-temp-then-rename in the same directory, so a crash
    mid-save leaves the previous document intact.
    """

    def __init__(self, path: str, legacy_path: Optional[str] = None):
        """
        Initialize the store.

        Args:
            path: Location of the JSON profile
            legacy_path: Optional bash-era profile imported when ``path`` is missing
        """
        self.path = path
        self.legacy_path = legacy_path

    def load(self) -> BackupProfile:
        """
        Load, migrate and validate the profile.

        Returns:
            BackupProfile (defaults when no profile exists yet)

        Raises:
            ProfileError: If the document is unreadable or invalid
        """
        source_path = self.path
        if not os.path.exists(source_path):
            if self.legacy_path and os.path.exists(self.legacy_path):
                logger.info(f"Importing legacy profile from {self.legacy_path}")
                source_path = self.legacy_path
            else:
                logger.warning(f"No profile found at {self.path}, using defaults")
                return BackupProfile()

        self._check_permissions(source_path)

        try:
            with open(source_path, 'r', encoding='utf-8') as f:
                text = f.read()
        except OSError as e:
            raise ProfileError(f"Error reading profile {source_path}: {e}")

        try:
            document = self._parse(text)
            document, migrated = run_migrations(document)
        except MigrationError as e:
            raise ProfileError(f"Cannot load profile {source_path}: {e}")

        profile = BackupProfile.from_dict(document)

        if migrated or source_path != self.path:
            self.save(profile)
            logger.info(f"Profile migrated to schema version {CURRENT_SCHEMA_VERSION} and saved to {self.path}")

        logger.debug(f"Profile loaded from {source_path}")
        return profile

    def save(self, profile: BackupProfile):
        """
        Persist the profile atomically with mode 0600.

        Raises:
            ProfileError: If the document cannot be written
        """
        profile.validate()
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(prefix='.config-', suffix='.tmp', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(profile.to_dict(), f, indent=2)
                f.write('\n')
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise ProfileError(f"Failed to save profile to {self.path}: {e}")

        logger.debug(f"Profile saved to {self.path}")

    @staticmethod
    def _parse(text: str) -> Dict[str, Any]:
        try:
            document = json.loads(text)
        except json.JSONDecodeError:
            # Not JSON: the bash tool's KEY="value" format
            return parse_legacy_config(text)

        if not isinstance(document, dict):
            raise MigrationError("Profile document must be a JSON object")
        return document

    @staticmethod
    def _check_permissions(path: str):
        mode = os.stat(path).st_mode & 0o777
        if mode & 0o077:
            logger.warning(f"Profile {path} has insecure permissions ({oct(mode)}), resetting to 0600")
            try:
                os.chmod(path, 0o600)
            except OSError as e:
                logger.warning(f"Could not fix profile permissions: {e}")
