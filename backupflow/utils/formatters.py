"""Formatting and parsing helpers for sizes, durations and timestamps."""

import re
from datetime import datetime, timedelta

_SIZE_UNITS = {'': 1, 'B': 1, 'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3, 'T': 1024 ** 4}
_SIZE_PATTERN = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([BKMGT]?)(?:i?B)?\s*$', re.IGNORECASE)


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format.

    Args:
        size_bytes: Size in bytes.

    Returns:
        Human readable size string, e.g. ``1.5MB``.
    """
    if size_bytes < 1024:
        return f"{size_bytes}B"
    for unit in ('KB', 'MB', 'GB'):
        size_bytes /= 1024
        if size_bytes < 1024:
            return f"{size_bytes:.1f}{unit}"
    return f"{size_bytes / 1024:.1f}TB"


def parse_size(text: str) -> int:
    """Parse an rclone-style size such as ``8M``, ``512K`` or ``1.5G`` into bytes.

    A bare number is bytes. Raises ValueError for anything else.
    """
    match = _SIZE_PATTERN.match(text or '')
    if not match:
        raise ValueError(f"Invalid size: {text!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit.upper()])


def format_duration(delta: timedelta) -> str:
    """Format a timedelta as ``1h 02m 03s`` / ``2m 03s`` / ``4s``."""
    total = int(delta.total_seconds())
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {seconds:02d}s"
    if minutes:
        return f"{minutes}m {seconds:02d}s"
    return f"{seconds}s"


def format_date(dt: datetime) -> str:
    return dt.strftime('%Y-%m-%d %H:%M:%S')
