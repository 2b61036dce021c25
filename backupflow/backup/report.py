"""
Run reports.

A ReportBuilder accumulates per-source and per-target outcomes while the run
proceeds; ``finalize`` derives the overall status and returns an immutable
RunReport that is handed to notification channels and run history.
"""

import socket
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple, Dict, Any

from backupflow.utils.formatters import format_file_size, format_duration, format_date
from .compression import PackageResult
from .retention import DeletionSummary
from .uploader import UploadOutcome

APP_NAME = 'backupflow'


class RunStatus(str, Enum):
    SUCCESS = 'success'
    PARTIAL_SUCCESS = 'partial_success'
    FAILURE = 'failure'

    @property
    def label(self) -> str:
        return {
            RunStatus.SUCCESS: 'Backup succeeded',
            RunStatus.PARTIAL_SUCCESS: 'Backup partially succeeded',
            RunStatus.FAILURE: 'Backup failed',
        }[self]


@dataclass(frozen=True)
class TargetResult:
    target: str
    transport_succeeded: bool
    verified: Optional[bool] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.transport_succeeded and self.verified is not False


@dataclass(frozen=True)
class SourceEntry:
    """Outcome of one source (or of all sources under the single strategy)."""
    source: str
    archive_name: Optional[str] = None
    size_bytes: Optional[int] = None
    error: Optional[str] = None
    targets: Tuple[TargetResult, ...] = ()
    synced: bool = False

    @property
    def packaged(self) -> bool:
        """Archived, or found and handed to sync (nothing to package)."""
        return (self.synced or self.archive_name is not None) and self.error is None

    @property
    def succeeded(self) -> bool:
        """At least one target effectively received the archive."""
        return any(result.succeeded for result in self.targets)

    @property
    def fully_succeeded(self) -> bool:
        return self.packaged and bool(self.targets) and all(result.succeeded for result in self.targets)


@dataclass(frozen=True)
class RetentionEntry:
    target: str
    found: int
    deleted: int
    failed: int


@dataclass(frozen=True)
class RunReport:
    """Immutable result of a run."""
    trigger: str
    started_at: datetime
    completed_at: datetime
    status: RunStatus
    sources: Tuple[SourceEntry, ...] = ()
    backup_mode: str = 'archive'
    retention: Tuple[RetentionEntry, ...] = ()
    retention_skipped: bool = False
    source_count: int = 0
    failure_reason: Optional[str] = None
    abort_kind: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self.abort_kind is not None

    @property
    def any_target_succeeded(self) -> bool:
        return any(entry.succeeded for entry in self.sources)

    def to_dict(self) -> Dict[str, Any]:
        document = asdict(self)
        document['status'] = self.status.value
        document['started_at'] = self.started_at.isoformat()
        document['completed_at'] = self.completed_at.isoformat()
        return document


@dataclass
class ReportBuilder:
    """Mutable accumulator for one run's report."""
    trigger: str
    started_at: datetime
    source_count: int = 0
    backup_mode: str = 'archive'
    sources: List[SourceEntry] = field(default_factory=list)
    retention: List[RetentionEntry] = field(default_factory=list)
    retention_skipped: bool = False
    failure_reason: Optional[str] = None
    abort_kind: Optional[str] = None

    def record_source(self, result: PackageResult, outcomes: List[UploadOutcome] = None):
        """Record a packaging result and the upload outcomes of its archive."""
        archive = result.archive
        self.sources.append(SourceEntry(
            source=result.source_description,
            archive_name=archive.file_name if archive else None,
            size_bytes=archive.size_bytes if archive else None,
            error=result.error,
            targets=tuple(
                TargetResult(o.target.name, o.transport_succeeded, o.verified, o.error)
                for o in outcomes or []
            ),
        ))

    def record_sync(self, source: str, outcomes: List[UploadOutcome] = None, error: str = None):
        """Record a sync-mode source and the outcome at each target."""
        self.sources.append(SourceEntry(
            source=source,
            error=error,
            synced=True,
            targets=tuple(
                TargetResult(o.target.name, o.transport_succeeded, o.verified, o.error)
                for o in outcomes or []
            ),
        ))

    def record_retention(self, summary: DeletionSummary):
        self.retention.append(RetentionEntry(summary.target, summary.found, summary.deleted, summary.failed))

    def skip_retention(self):
        self.retention_skipped = True

    def abort(self, reason: str, kind: str = 'validation'):
        """Mark the run as aborted before any side effect."""
        self.abort_kind = kind
        self.failure_reason = reason

    def finalize(self, completed_at: datetime = None) -> RunReport:
        """
        Derive the overall status and freeze the report.

        Success: every source packaged and delivered to every enabled target.
        Failure: the run aborted, or no source reached any target.
        Partial success: anything in between.
        """
        if self.abort_kind is not None:
            status = RunStatus.FAILURE
        elif not any(entry.succeeded for entry in self.sources):
            status = RunStatus.FAILURE
            if self.failure_reason is None:
                self.failure_reason = (
                    'No source was synced to any target' if self.backup_mode == 'sync'
                    else 'No archive was delivered to any target'
                )
        elif all(entry.fully_succeeded for entry in self.sources):
            status = RunStatus.SUCCESS
        else:
            status = RunStatus.PARTIAL_SUCCESS

        return RunReport(
            trigger=self.trigger,
            started_at=self.started_at,
            completed_at=completed_at or datetime.now(),
            status=status,
            sources=tuple(self.sources),
            backup_mode=self.backup_mode,
            retention=tuple(self.retention),
            retention_skipped=self.retention_skipped,
            source_count=self.source_count,
            failure_reason=self.failure_reason,
            abort_kind=self.abort_kind,
        )


def render_subject(report: RunReport) -> str:
    return f"[{APP_NAME}] {report.status.label}"


def render_text(report: RunReport, hostname: str = None) -> str:
    """Render the report as the plain-text notification body."""
    lines = [
        f"📦 {APP_NAME}",
        f"💻 Host: {hostname or socket.gethostname()}",
        f"🕒 Time: {format_date(report.started_at)}",
        f"🔧 Trigger: {report.trigger} · {report.backup_mode}",
        f"📁 Sources: {report.source_count}",
    ]

    for entry in report.sources:
        lines.append('')
        if entry.synced:
            lines.extend(_render_sync(entry))
            continue
        lines.append('📂 Archive')
        lines.append(f"Source: {entry.source}")
        if not entry.packaged:
            lines.append(f"Status: ❌ Compression failed ({entry.error})")
            continue
        lines.append(f"Archive: {entry.archive_name} ({format_file_size(entry.size_bytes)})")
        lines.append('☁️ Upload')
        for result in entry.targets:
            if not result.transport_succeeded:
                lines.append(f"{result.target} ❌ upload failed")
            elif result.verified is None:
                lines.append(f"{result.target} ✅ uploaded")
            elif result.verified:
                lines.append(f"{result.target} ✅ uploaded (verified ✔️)")
            else:
                lines.append(f"{result.target} ✅ uploaded (verification failed ❌)")

    if report.retention:
        lines.append('')
        lines.append('🧹 Retention')
        for entry in report.retention:
            line = f"{entry.target}: {entry.found} archives found, {entry.deleted} deleted 🗑️"
            if entry.failed:
                line += f", {entry.failed} failed"
            lines.append(line)
    elif report.retention_skipped:
        lines.append('')
        lines.append('🧹 Retention skipped: nothing was uploaded')

    if report.failure_reason and report.status is not RunStatus.SUCCESS:
        lines.append('')
        lines.append(f"Reason: {report.failure_reason}")

    emoji = {'success': '✅', 'partial_success': '⚠️', 'failure': '❌'}[report.status.value]
    lines.append('')
    lines.append(f"{emoji} Status: {report.status.label} in "
                 f"{format_duration(report.completed_at - report.started_at)}")
    return '\n'.join(lines)


def _render_sync(entry: SourceEntry) -> List[str]:
    lines = ['🔄 Sync', f"Source: {entry.source}"]
    if entry.error:
        lines.append(f"Status: ❌ Sync failed ({entry.error})")
        return lines
    lines.append('☁️ Upload')
    for result in entry.targets:
        if result.transport_succeeded:
            lines.append(f"{result.target} ✅ synced")
        else:
            lines.append(f"{result.target} ❌ sync failed")
    return lines
