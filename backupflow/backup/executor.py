"""
Backup run orchestrator - sequences a complete backup run.

Workflow:
1. Acquire the run lock
2. Load the profile and validate it (sources, targets, temp space)
3. For each source: package, upload to every enabled target, discard archive
   (sync mode instead mirrors each source with rclone sync)
4. Enforce retention, only if at least one upload succeeded (archive mode)
5. Finalize the report, notify, record history
6. Persist the last-run timestamp (not after a failed run)
7. Remove the run's temp directory and release the lock
"""

import os
import time
import shutil
import logging
import tempfile
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Callable

from backupflow.history import HistoryStore
from backupflow.utils.crypto import SecretBox, SecretError
from .lock import RunLock
from .profile import BackupMode, BackupProfile, ConfigStore, ProfileError, RemoteTarget, CompressionOptions
from .compression import Packager, InsufficientSpaceError, archive_prefixes, check_temp_space
from .storage import Transport, StorageError, BandwidthThrottle, create_transport
from .uploader import Uploader
from .retention import RetentionEnforcer
from .report import ReportBuilder, RunReport, RunStatus
from .notify import Notifier

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PARTIAL = 3
EXIT_VALIDATION = 4
EXIT_LOCK_CONFLICT = 5
EXIT_INSUFFICIENT_SPACE = 6


class ValidationError(Exception):
    """Raised when a run cannot start (no sources, no enabled targets)."""
    pass


class RunState(str, Enum):
    INIT = 'init'
    VALIDATING = 'validating'
    PACKAGING = 'packaging'
    UPLOADING = 'uploading'
    RETENTION = 'retention'
    REPORTING = 'reporting'
    DONE = 'done'
    ABORTED = 'aborted'


class RunOrchestrator:
    """
    Orchestrates the complete backup workflow for the profile.
    """

    def __init__(self, settings, store: ConfigStore = None,
                 transport_factory: Callable[[RemoteTarget], Transport] = None,
                 notifier: Notifier = None, history: HistoryStore = None):
        """
        Initialize orchestrator.

        Args:
            settings: Config instance (paths and external tools)
            store: Profile store (defaults to the settings' profile location)
            transport_factory: Builds the transport for a target (defaults to create_transport)
            notifier: Report dispatcher (defaults to the notifications file)
            history: Run history store (defaults to the settings' database)
        """
        self.settings = settings
        self.store = store or ConfigStore(settings.CONFIG_FILE, settings.LEGACY_CONFIG_FILE)
        self.secrets = SecretBox(settings.SECRET_KEY_FILE)
        self.transport_factory = transport_factory
        self.notifier = notifier if notifier is not None else Notifier.from_settings(settings)
        self.history = history if history is not None else HistoryStore(settings.HISTORY_DATABASE_URI)
        self.state = RunState.INIT
        self.temp_dir = None
        self.logs = []

    def run(self, trigger: str = 'manual') -> RunReport:
        """
        Run a backup now.

        Args:
            trigger: What started the run ('manual', 'auto', 'scheduled')

        Returns:
            Finalized RunReport

        Raises:
            LockConflictError: If another run holds the lock (nothing was changed)
        """
        with RunLock(self.settings.LOCK_FILE):
            self._transition(RunState.INIT)
            return self._execute(trigger, self._load_profile)

    def check_auto(self, trigger: str = 'auto') -> Optional[RunReport]:
        """
        Run a backup only if the configured interval has elapsed.

        A profile with nothing to back up (or nowhere to send it) is reported
        as a failed run whether or not a backup is due.

        Returns:
            RunReport, or None when no backup is due

        Raises:
            LockConflictError: If another run holds the lock
        """
        with RunLock(self.settings.LOCK_FILE):
            self._transition(RunState.INIT)
            try:
                profile = self.store.load()
                self._check_runnable(profile)
            except (ProfileError, ValidationError):
                # Reported as an aborted run like any other validation failure
                return self._execute(trigger, self._load_profile)

            if not is_backup_due(profile):
                remaining = profile.last_run_timestamp + profile.auto_backup_interval_days * SECONDS_PER_DAY
                logger.info(
                    f"No backup due (interval {profile.auto_backup_interval_days} days, "
                    f"next after {datetime.fromtimestamp(remaining):%Y-%m-%d %H:%M:%S})"
                )
                self._transition(RunState.DONE)
                return None

            self._log(f"Automatic backup due (interval {profile.auto_backup_interval_days} days)")
            return self._execute(trigger, lambda: profile)

    def _load_profile(self) -> BackupProfile:
        return self.store.load()

    def _execute(self, trigger: str, load_profile: Callable[[], BackupProfile]) -> RunReport:
        started_at = datetime.now()
        builder = ReportBuilder(trigger, started_at)
        self._log(f"Starting backup run (trigger: {trigger})")

        # Validating
        self._transition(RunState.VALIDATING)
        try:
            profile = load_profile()
            builder.source_count = len(profile.sources)
            builder.backup_mode = profile.backup_mode.value
            options = self._validate(profile)
            if profile.backup_mode is BackupMode.ARCHIVE:
                self.temp_dir = self._make_temp_dir()
        except (ValidationError, ProfileError) as e:
            return self._abort(builder, str(e), 'validation')
        except InsufficientSpaceError as e:
            return self._abort(builder, str(e), 'insufficient_space')

        try:
            enabled = profile.enabled_targets()
            throttle = BandwidthThrottle(profile.bandwidth_limit)
            transports = {}

            def transport_for(target: RemoteTarget) -> Transport:
                if target.name not in transports:
                    transports[target.name] = self._make_transport(target, profile)
                return transports[target.name]

            uploader = Uploader(transport_for, throttle, profile.integrity_check, log=self._log)

            if profile.backup_mode is BackupMode.SYNC:
                self._sync_sources(profile, enabled, uploader, builder)
            else:
                self._archive_sources(profile, options, started_at, enabled, uploader, transport_for, builder)
        finally:
            self._cleanup()

        self._transition(RunState.REPORTING)
        report = builder.finalize()
        self._deliver(report)

        if report.status is not RunStatus.FAILURE and report.any_target_succeeded:
            profile.last_run_timestamp = int(time.time())
            try:
                self.store.save(profile)
                self._log("Updated last run timestamp")
            except ProfileError as e:
                logger.error(f"Could not persist last run timestamp: {e}")
        else:
            self._log("Run failed, last run timestamp left unchanged")

        self._transition(RunState.DONE)
        return report

    def _archive_sources(self, profile: BackupProfile, options: CompressionOptions, started_at: datetime,
                         enabled: List[RemoteTarget], uploader: Uploader,
                         transport_for: Callable[[RemoteTarget], Transport], builder: ReportBuilder):
        """Package, upload and discard one archive at a time, then enforce retention."""
        self._log(f"Temporary directory: {self.temp_dir}")
        packager = Packager(options, self.temp_dir, started_at, self.settings.ZIP_BINARY)

        # Packaging / Uploading, one source at a time
        self._transition(RunState.PACKAGING)
        for result in packager.package(profile.sources, profile.packaging_strategy):
            outcomes = []
            if result.succeeded:
                self._transition(RunState.UPLOADING)
                self._log(f"Archive {result.archive.file_name} ready, "
                          f"uploading to {len(enabled)} target(s)")
                try:
                    outcomes = uploader.upload(result.archive, enabled)
                finally:
                    result.archive.discard()
                self._transition(RunState.PACKAGING)
            else:
                self._log(f"Skipping {result.source_description}: {result.error}")
            builder.record_source(result, outcomes)

        # Retention, only after at least one confirmed delivery
        if any(entry.succeeded for entry in builder.sources):
            self._transition(RunState.RETENTION)
            enforcer = RetentionEnforcer(transport_for, log=self._log)
            prefixes = archive_prefixes(profile.sources, profile.packaging_strategy).values()
            for summary in enforcer.enforce(enabled, profile.retention, prefixes):
                builder.record_retention(summary)
        else:
            self._log("No upload succeeded, skipping retention")
            builder.skip_retention()

    def _sync_sources(self, profile: BackupProfile, enabled: List[RemoteTarget],
                      uploader: Uploader, builder: ReportBuilder):
        """Mirror each source into its own directory on every target; no retention."""
        self._log("Sync mode: sources are mirrored, retention does not apply")
        self._transition(RunState.UPLOADING)
        for source, name in sync_destinations(profile.sources).items():
            if not os.path.exists(source):
                self._log(f"Skipping {source}: path does not exist")
                builder.record_sync(source, error='Path does not exist')
                continue
            builder.record_sync(source, uploader.sync(source, name, enabled))

    def _check_runnable(self, profile: BackupProfile):
        if not profile.sources:
            raise ValidationError("No backup sources configured")
        if not profile.enabled_targets():
            raise ValidationError("No enabled backup targets")

    def _validate(self, profile: BackupProfile) -> Optional[CompressionOptions]:
        """
        Fatal pre-flight checks.

        Returns:
            Compression options with the archive password decrypted
            (None in sync mode, which packages nothing)

        Raises:
            ValidationError: If there is nothing to back up, nowhere to send it,
                             or the temp directory is unusable
            InsufficientSpaceError: If the temp filesystem is too small
        """
        self._check_runnable(profile)
        if profile.backup_mode is BackupMode.SYNC:
            return None

        try:
            password = self.secrets.decrypt(profile.compression.password)
        except SecretError as e:
            raise ValidationError(f"Cannot decrypt archive password: {e}")

        if profile.space_check:
            try:
                os.makedirs(self.settings.TEMP_DIR, exist_ok=True)
                required, available = check_temp_space(profile.sources, self.settings.TEMP_DIR)
            except OSError as e:
                raise ValidationError(f"Temporary directory {self.settings.TEMP_DIR} is unusable: {e}")
            self._log(f"Temp space check passed (need ~{required} bytes, {available} available)")

        return CompressionOptions(profile.compression.format, profile.compression.level, password)

    def _make_temp_dir(self) -> str:
        try:
            os.makedirs(self.settings.TEMP_DIR, exist_ok=True)
            return tempfile.mkdtemp(prefix='backupflow_', dir=self.settings.TEMP_DIR)
        except OSError as e:
            raise ValidationError(f"Cannot create temporary directory in {self.settings.TEMP_DIR}: {e}")

    def _make_transport(self, target: RemoteTarget, profile: BackupProfile) -> Transport:
        if self.transport_factory is not None:
            return self.transport_factory(target)
        try:
            return create_transport(target, self.secrets, self.settings.RCLONE_BINARY,
                                    profile.transfer_timeout_seconds)
        except SecretError as e:
            raise StorageError(f"Cannot decrypt credentials for {target.name}: {e}")

    def _abort(self, builder: ReportBuilder, reason: str, kind: str) -> RunReport:
        self._transition(RunState.ABORTED)
        self._log(f"Backup aborted: {reason}")
        builder.abort(reason, kind)
        report = builder.finalize()
        self._deliver(report)
        return report

    def _deliver(self, report: RunReport):
        """Notify and record; neither can change the run's outcome."""
        self._log(f"Run finished with status {report.status.value}")
        try:
            self.notifier.send(report)
        except Exception:
            logger.exception("Notification dispatch failed")
        self.history.record(report, self.logs)

    def _transition(self, state: RunState):
        logger.debug(f"Run state: {self.state.value} -> {state.value}")
        self.state = state

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")
        self.temp_dir = None

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def is_backup_due(profile: BackupProfile, now: float = None) -> bool:
    """True if no backup has run yet or the interval has elapsed."""
    if not profile.last_run_timestamp:
        return True
    now = time.time() if now is None else now
    return now - profile.last_run_timestamp >= profile.auto_backup_interval_days * SECONDS_PER_DAY


def sync_destinations(sources: List[str]) -> Dict[str, str]:
    """
    Map each source to the directory it is mirrored into on a target.

    The directory is the source's basename; repeated basenames get ``-2``,
    ``-3``... in source order.
    """
    destinations = {}
    used = set()
    for source in sources:
        base = os.path.basename(os.path.normpath(source))
        name = base
        counter = 2
        while name in used:
            name = f"{base}-{counter}"
            counter += 1
        used.add(name)
        destinations[source] = name
    return destinations


def exit_code_for(report: Optional[RunReport]) -> int:
    """Process exit code for a finished (or not due) run."""
    if report is None or report.status is RunStatus.SUCCESS:
        return EXIT_SUCCESS
    if report.abort_kind == 'insufficient_space':
        return EXIT_INSUFFICIENT_SPACE
    if report.abort_kind == 'validation':
        return EXIT_VALIDATION
    if report.status is RunStatus.PARTIAL_SUCCESS:
        return EXIT_PARTIAL
    return EXIT_FAILURE


def execute_backup(settings, trigger: str = 'manual') -> RunReport:
    """
    Run a backup now.

    Raises:
        LockConflictError: If another run is in progress
    """
    return RunOrchestrator(settings).run(trigger)


def check_auto_backup(settings, trigger: str = 'auto') -> Optional[RunReport]:
    """
    Run a backup if one is due; None otherwise.

    Raises:
        LockConflictError: If another run is in progress
    """
    return RunOrchestrator(settings).check_auto(trigger)
