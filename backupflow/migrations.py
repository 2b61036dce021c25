"""
Profile document migrations for backupflow.

Each migration takes the document at version N and returns it at version N+1.
Migrations run once at load time, before validation; the caller persists the
result so the next load starts at the current version.

Version 0 is the legacy shell-style profile (``KEY="value"`` lines, list
values joined with ``;``) written by the original bash tool.
"""

import logging
import re
from typing import Dict, Any, List, Tuple

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 3

LEGACY_DEFAULT_ORIGIN = 'manual'

_LEGACY_LINE = re.compile(r'^([A-Z_][A-Z0-9_]*)=(.*)$')


class MigrationError(ValueError):
    """Raised when a profile document cannot be migrated."""
    pass


def parse_legacy_config(text: str) -> Dict[str, Any]:
    """
    Parse a legacy ``KEY="value"`` profile into a version-0 document.

    Args:
        text: File contents

    Returns:
        ``{'schema_version': 0, 'values': {KEY: value}}``

    Raises:
        MigrationError: If no assignments are found
    """
    values = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue
        match = _LEGACY_LINE.match(line)
        if not match:
            continue
        key, value = match.groups()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        values[key] = value

    if not values:
        raise MigrationError("Not a legacy profile: no KEY=value assignments found")

    return {'schema_version': 0, 'values': values}


def _split_legacy_list(value: str) -> List[str]:
    # The bash tool joined with ';' and split on ';' (IFS=';;'), so empty
    # fields can appear between doubled separators.
    return [item for item in (value or '').split(';') if item]


def _legacy_int(values: Dict[str, str], key: str, default: int) -> int:
    try:
        return int(values.get(key) or default)
    except ValueError:
        logger.warning(f"Legacy profile: ignoring non-numeric {key}={values.get(key)!r}")
        return default


def _migrate_v0_to_v1(document: Dict[str, Any]) -> Dict[str, Any]:
    values = document.get('values', {})

    targets = _split_legacy_list(values.get('RCLONE_TARGETS_STRING'))
    metadata = _split_legacy_list(values.get('RCLONE_TARGETS_METADATA_STRING'))
    if len(metadata) != len(targets):
        logger.info("Legacy profile: padding target metadata to match target list")
    metadata = [metadata[i] if i < len(metadata) else LEGACY_DEFAULT_ORIGIN for i in range(len(targets))]

    enabled_indices = []
    for item in _split_legacy_list(values.get('ENABLED_RCLONE_TARGET_INDICES_STRING')):
        try:
            index = int(item)
        except ValueError:
            logger.warning(f"Legacy profile: ignoring invalid target index {item!r}")
            continue
        if 0 <= index < len(targets) and index not in enabled_indices:
            enabled_indices.append(index)

    # Enable-order first, then the disabled remainder
    ordered = enabled_indices + [i for i in range(len(targets)) if i not in enabled_indices]
    migrated_targets = []
    for index in ordered:
        remote, _, path = targets[index].partition(':')
        migrated_targets.append({
            'remote': remote,
            'path': path.strip('/'),
            'enabled': index in enabled_indices,
            'origin': metadata[index],
        })

    policy = values.get('RETENTION_POLICY_TYPE') or 'none'
    retention_value = _legacy_int(values, 'RETENTION_VALUE', 0)

    return {
        'schema_version': 1,
        'backup_mode': values.get('BACKUP_MODE') or 'archive',
        'sources': _split_legacy_list(values.get('BACKUP_SOURCE_PATHS_STRING')),
        'packaging_strategy': values.get('PACKAGING_STRATEGY') or 'separate',
        'compression': {
            'format': values.get('COMPRESSION_FORMAT') or 'zip',
            'level': _legacy_int(values, 'COMPRESSION_LEVEL', 6),
            'password': values.get('ZIP_PASSWORD', ''),
        },
        'integrity_check': values.get('ENABLE_INTEGRITY_CHECK', 'true') == 'true',
        'space_check': values.get('ENABLE_SPACE_CHECK', 'true') != 'false',
        'retention': {
            'policy': policy,
            'value': retention_value if policy != 'none' else 0,
        },
        'bandwidth_limit': values.get('RCLONE_BWLIMIT', ''),
        'auto_backup_interval_days': _legacy_int(values, 'AUTO_BACKUP_INTERVAL_DAYS', 7),
        'last_run_timestamp': _legacy_int(values, 'LAST_AUTO_BACKUP_TIMESTAMP', 0),
        'targets': migrated_targets,
    }


def _migrate_v1_to_v2(document: Dict[str, Any]) -> Dict[str, Any]:
    document = dict(document)
    targets = []
    for target in document.get('targets', []):
        target = dict(target)
        target.setdefault('backend', 'rclone')
        target.setdefault('options', {})
        targets.append(target)
    document['targets'] = targets
    document.setdefault('transfer_timeout_seconds', None)
    document['schema_version'] = 2
    return document


def _migrate_v2_to_v3(document: Dict[str, Any]) -> Dict[str, Any]:
    document = dict(document)
    document.setdefault('backup_mode', 'archive')
    document['schema_version'] = 3
    return document


MIGRATIONS = {
    0: _migrate_v0_to_v1,
    1: _migrate_v1_to_v2,
    2: _migrate_v2_to_v3,
}


def run_migrations(document: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """
    Bring a profile document up to CURRENT_SCHEMA_VERSION.

    Args:
        document: Parsed profile document (a version-0 document from
                  parse_legacy_config, or a JSON document)

    Returns:
        Tuple of (migrated document, whether any migration ran)

    Raises:
        MigrationError: If the document is newer than this release supports
    """
    version = document.get('schema_version', 1)
    if not isinstance(version, int) or version < 0:
        raise MigrationError(f"Invalid schema_version: {version!r}")
    if version > CURRENT_SCHEMA_VERSION:
        raise MigrationError(
            f"Profile schema version {version} is newer than supported version {CURRENT_SCHEMA_VERSION}"
        )

    migrated = False
    while version < CURRENT_SCHEMA_VERSION:
        logger.info(f"Running profile migration: v{version} -> v{version + 1}")
        document = MIGRATIONS[version](document)
        version = document['schema_version']
        migrated = True

    return document, migrated
