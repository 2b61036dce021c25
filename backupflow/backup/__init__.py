"""
Backup module for backupflow.

This module handles the core backup functionality including:
- Run locking
- Packaging (compression)
- Transports (rclone, S3, SFTP, local)
- Upload with verification
- Retention policy enforcement
- Reporting and notifications
- Run orchestration
- Restore
"""

from .executor import RunOrchestrator, execute_backup, check_auto_backup
from .lock import RunLock, LockConflictError
from .compression import Packager, create_archive
from .storage import RcloneTransport, S3Transport, SFTPTransport, LocalTransport, create_transport
from .uploader import Uploader
from .retention import RetentionEnforcer
from .report import ReportBuilder, RunReport, RunStatus

__all__ = [
    'RunOrchestrator',
    'execute_backup',
    'check_auto_backup',
    'RunLock',
    'LockConflictError',
    'Packager',
    'create_archive',
    'RcloneTransport',
    'S3Transport',
    'SFTPTransport',
    'LocalTransport',
    'create_transport',
    'Uploader',
    'RetentionEnforcer',
    'ReportBuilder',
    'RunReport',
    'RunStatus'
]
