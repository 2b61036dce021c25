import os
import logging
from logging.handlers import RotatingFileHandler

__version__ = '1.2.0'


def configure_logging(settings, console_level: str = None):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    os.makedirs(os.path.dirname(settings.LOG_FILE), exist_ok=True)

    console_log_level = getattr(logging, (console_level or settings.CONSOLE_LOG_LEVEL).upper(), logging.INFO)
    file_log_level = getattr(logging, settings.FILE_LOG_LEVEL.upper(), logging.DEBUG)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        settings.LOG_FILE,
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT
    )
    file_handler.setLevel(file_log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger; force replaces handlers from an earlier call
    logging.basicConfig(
        level=min(console_log_level, file_log_level),
        handlers=[console_handler, file_handler],
        force=True
    )

    # Transport libraries are chatty at DEBUG
    for noisy in ('botocore', 'boto3', 's3transfer', 'paramiko', 'urllib3', 'apscheduler'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        f"Logging configured (console: {logging.getLevelName(console_log_level)}, "
        f"file: {settings.LOG_FILE})"
    )
