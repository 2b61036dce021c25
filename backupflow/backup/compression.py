"""
Packaging of backup sources into archives.

Supports:
- zip: in-process zipfile (external ``zip`` binary when a password is set)
- tar.gz: gzip compressed tar

Archive names follow ``<name>_<YYYYMMDDHHMMSS>.<ext>``; the timestamp is the
run start time shared by every archive of a run, and ``<name>`` is the
sanitized source basename (or ``all_sources`` for a combined archive).
"""

import os
import re
import shutil
import logging
import tarfile
import zipfile
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Optional, Tuple, Iterator

from .profile import PackagingStrategy, CompressionOptions

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'
SINGLE_ARCHIVE_PREFIX = 'all_sources'
ALL_SOURCES_DESCRIPTION = 'all sources'
SPACE_SAFETY_MARGIN = 1.2

ARCHIVE_NAME_PATTERN = re.compile(
    r'^(?P<prefix>[A-Za-z0-9_-]+)_(?P<timestamp>\d{14})\.(?P<extension>zip|tar\.gz)$'
)


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


class InsufficientSpaceError(Exception):
    """Raised when the temp filesystem cannot hold the archives of a run."""

    def __init__(self, required_bytes: int, available_bytes: int, temp_dir: str):
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        self.temp_dir = temp_dir
        super().__init__(
            f"Insufficient temp space in {temp_dir}: "
            f"need ~{required_bytes} bytes, {available_bytes} available"
        )


@dataclass
class Archive:
    """An archive produced for one run; lives in the run's temp directory."""
    source_description: str
    file_name: str
    file_path: str
    size_bytes: int
    format: str
    created_at: datetime

    def discard(self):
        """Delete the local archive file (never kept after upload)."""
        try:
            os.remove(self.file_path)
            logger.debug(f"Removed local archive {self.file_name}")
        except FileNotFoundError:
            pass


@dataclass
class PackageResult:
    """Outcome of packaging one source (or all sources under Single)."""
    source_description: str
    archive: Optional[Archive] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.archive is not None


def sanitize_name(name: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_-]`` with an underscore."""
    sanitized = re.sub(r'[^A-Za-z0-9_-]', '_', name)
    return sanitized or '_'


def archive_prefixes(sources: List[str], strategy: PackagingStrategy) -> Dict[str, str]:
    """
    Map each source to the name prefix its archives carry.

    Under Separate, colliding sanitized basenames (``/x/app`` and ``/y/app``)
    get ``-2``, ``-3``... in source order. Under Single every source maps to
    ``all_sources``.

    Args:
        sources: Source paths in configured order
        strategy: Packaging strategy of the run

    Returns:
        Dict of source path -> prefix
    """
    if strategy is PackagingStrategy.SINGLE:
        return {source: SINGLE_ARCHIVE_PREFIX for source in sources}

    prefixes = {}
    used = set()
    for source in sources:
        base = sanitize_name(os.path.basename(os.path.normpath(source)))
        prefix = base
        counter = 2
        while prefix in used:
            prefix = f"{base}-{counter}"
            counter += 1
        used.add(prefix)
        prefixes[source] = prefix
    return prefixes


def generate_archive_filename(prefix: str, timestamp: datetime, compression_format: str) -> str:
    """
    Generate a standardized archive filename.

    Format: {prefix}_{YYYYMMDDHHMMSS}.{ext}

    Args:
        prefix: Sanitized archive prefix
        timestamp: Run start time
        compression_format: 'zip' or 'tar.gz'

    Returns:
        Filename (without path)
    """
    return f"{prefix}_{timestamp.strftime(TIMESTAMP_FORMAT)}.{compression_format}"


def parse_archive_filename(filename: str) -> Optional[Tuple[str, datetime, str]]:
    """
    Split an archive filename into (prefix, timestamp, extension).

    Returns:
        Tuple, or None if the name does not follow the naming convention
    """
    match = ARCHIVE_NAME_PATTERN.match(filename)
    if not match:
        return None
    try:
        timestamp = datetime.strptime(match.group('timestamp'), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return match.group('prefix'), timestamp, match.group('extension')


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles the multi-part .tar.gz extension.
    """
    if filename.endswith('.tar.gz'):
        return filename[:-7]
    elif filename.endswith('.zip'):
        return filename[:-4]
    else:
        return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")


def calculate_sources_size(sources: List[str]) -> int:
    """On-disk size of all existing sources, in bytes (missing ones count as 0)."""
    total = 0
    for source in sources:
        if os.path.isfile(source):
            total += os.path.getsize(source)
        elif os.path.isdir(source):
            for root, _, files in os.walk(source):
                for name in files:
                    path = os.path.join(root, name)
                    if not os.path.islink(path):
                        try:
                            total += os.path.getsize(path)
                        except OSError:
                            pass
    return total


def check_temp_space(sources: List[str], temp_dir: str, margin: float = SPACE_SAFETY_MARGIN) -> Tuple[int, int]:
    """
    Compare the sources' size (plus safety margin) against free temp space.

    Returns:
        Tuple of (required_bytes, available_bytes)

    Raises:
        InsufficientSpaceError: If the temp filesystem is too small
    """
    required = int(calculate_sources_size(sources) * margin)
    available = shutil.disk_usage(temp_dir).free
    if available < required:
        raise InsufficientSpaceError(required, available, temp_dir)
    return required, available


def create_archive(
    entries: List[Tuple[str, str]],
    output_path: str,
    compression_format: str = 'zip',
    level: int = 6,
    password: str = '',
    zip_binary: str = 'zip'
) -> str:
    """
    Create a compressed archive.

    Each entry is ``(base_dir, relative_name)``: the file or directory at
    ``base_dir/relative_name`` is stored under ``relative_name``, so archives
    never contain absolute paths.

    Args:
        entries: What to archive
        output_path: Path where archive should be created (without extension)
        compression_format: 'zip' or 'tar.gz'
        level: Compression level 1-9
        password: Zip password (zip only; uses the external zip binary)
        zip_binary: Name or path of the zip executable

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if not entries:
        raise CompressionError("No source paths provided")

    if compression_format not in ('zip', 'tar.gz'):
        raise ValueError(f"Invalid compression format: {compression_format}. Valid options: ['zip', 'tar.gz']")

    archive_path = f"{output_path}.{compression_format}"

    for base_dir, relative_name in entries:
        if not os.path.lexists(os.path.join(base_dir, relative_name)):
            raise CompressionError(f"Path does not exist: {os.path.join(base_dir, relative_name)}")

    try:
        if compression_format == 'tar.gz':
            _create_tar(entries, archive_path, level)
        elif password:
            _create_encrypted_zip(entries, archive_path, level, password, zip_binary)
        else:
            _create_zip(entries, archive_path, level)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                logger.warning(f"Could not remove partial archive {archive_path}")
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}")


def _create_zip(entries: List[Tuple[str, str]], archive_path: str, level: int):
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED, compresslevel=level) as zipf:
        for base_dir, relative_name in entries:
            source = Path(base_dir) / relative_name

            if source.is_file():
                zipf.write(source, relative_name)
            elif source.is_dir():
                zipf.write(source, relative_name)
                for item in sorted(source.rglob('*')):
                    if item.is_file() or item.is_dir():
                        zipf.write(item, str(item.relative_to(base_dir)))
            else:
                raise CompressionError(f"Invalid path type: {source}")


def _create_tar(entries: List[Tuple[str, str]], archive_path: str, level: int):
    with tarfile.open(archive_path, 'w:gz', compresslevel=level) as tar:
        for base_dir, relative_name in entries:
            tar.add(os.path.join(base_dir, relative_name), arcname=relative_name, recursive=True)


def _create_encrypted_zip(entries: List[Tuple[str, str]], archive_path: str, level: int,
                          password: str, zip_binary: str):
    """zipfile cannot write encrypted archives, so delegate to the zip binary."""
    if shutil.which(zip_binary) is None:
        raise CompressionError(f"'{zip_binary}' is required for password-protected archives but was not found")

    archive_path = os.path.abspath(archive_path)
    for base_dir, relative_name in entries:
        # cwd is the entry's parent so the archive stores relative paths
        result = subprocess.run(
            [zip_binary, '-rq', f'-{level}', '-P', password, archive_path, relative_name],
            cwd=base_dir,
            capture_output=True,
            text=True
        )
        if result.returncode != 0:
            raise CompressionError(
                f"zip exited with {result.returncode}: {result.stderr.strip() or result.stdout.strip()}"
            )


class Packager:
    """
    Turns backup sources into archives inside the run's temp directory.

    ``package`` is a generator so the orchestrator can upload and discard each
    archive before the next one is built.
    """

    def __init__(self, options: CompressionOptions, temp_dir: str, run_timestamp: datetime,
                 zip_binary: str = 'zip'):
        """
        Initialize packager.

        Args:
            options: Compression options with the password already decrypted
            temp_dir: Run-scoped temp directory
            run_timestamp: Run start time embedded in every archive name
            zip_binary: zip executable used for password-protected archives
        """
        self.options = options
        self.temp_dir = temp_dir
        self.run_timestamp = run_timestamp
        self.zip_binary = zip_binary

    def package(self, sources: List[str], strategy: PackagingStrategy) -> Iterator[PackageResult]:
        """
        Package sources according to the strategy.

        Yields one result per source under Separate, a single result for
        "all sources" under Single. Failures are yielded, never raised.
        """
        prefixes = archive_prefixes(sources, strategy)

        if strategy is PackagingStrategy.SINGLE:
            entries = [('/', os.path.normpath(source).lstrip('/')) for source in sources]
            yield self._build(ALL_SOURCES_DESCRIPTION, SINGLE_ARCHIVE_PREFIX, entries)
            return

        for source in sources:
            normalized = os.path.normpath(source)
            entries = [(os.path.dirname(normalized), os.path.basename(normalized))]
            yield self._build(source, prefixes[source], entries)

    def _build(self, description: str, prefix: str, entries: List[Tuple[str, str]]) -> PackageResult:
        file_name = generate_archive_filename(prefix, self.run_timestamp, self.options.format)
        output_path = os.path.join(self.temp_dir, strip_archive_extension(file_name))

        logger.info(f"Compressing {description} into '{file_name}'")
        try:
            archive_path = create_archive(
                entries,
                output_path,
                self.options.format,
                self.options.level,
                self.options.password,
                self.zip_binary
            )
            size = get_archive_size(archive_path)
        except (CompressionError, ValueError) as e:
            logger.error(f"Compression failed for {description}: {e}")
            return PackageResult(description, error=str(e))

        return PackageResult(description, archive=Archive(
            source_description=description,
            file_name=file_name,
            file_path=archive_path,
            size_bytes=size,
            format=self.options.format,
            created_at=datetime.now()
        ))
