import os
import tempfile


def _xdg_dir(env_name: str, fallback: str) -> str:
    base = os.environ.get(env_name) or os.path.expanduser(fallback)
    return os.path.join(base, 'backupflow')


class Config:
    """Base configuration"""

    # Locations
    CONFIG_DIR = os.environ.get('BACKUPFLOW_CONFIG_DIR') or _xdg_dir('XDG_CONFIG_HOME', '~/.config')
    DATA_DIR = os.environ.get('BACKUPFLOW_DATA_DIR') or _xdg_dir('XDG_DATA_HOME', '~/.local/share')
    TEMP_DIR = os.environ.get('BACKUPFLOW_TEMP_DIR') or tempfile.gettempdir()

    # Logging
    CONSOLE_LOG_LEVEL = os.environ.get('BACKUPFLOW_LOG_LEVEL', 'INFO').upper()
    FILE_LOG_LEVEL = 'DEBUG'
    LOG_MAX_BYTES = int(os.environ.get('BACKUPFLOW_LOG_MAX_MB', '8')) * 1024 * 1024
    LOG_BACKUP_COUNT = 5

    # External tools
    RCLONE_BINARY = os.environ.get('BACKUPFLOW_RCLONE') or 'rclone'
    ZIP_BINARY = os.environ.get('BACKUPFLOW_ZIP') or 'zip'

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_CHECK_MINUTES = 60

    @property
    def CONFIG_FILE(self) -> str:
        return os.path.join(self.CONFIG_DIR, 'config.json')

    @property
    def LEGACY_CONFIG_FILE(self) -> str:
        # Profile written by the bash tool this project replaces
        return os.path.join(os.path.dirname(self.CONFIG_DIR), 'bf', 'config')

    @property
    def NOTIFICATIONS_FILE(self) -> str:
        return os.path.join(self.CONFIG_DIR, 'notifications.json')

    @property
    def LOCK_FILE(self) -> str:
        return os.path.join(self.CONFIG_DIR, 'backupflow.lock')

    @property
    def SECRET_KEY_FILE(self) -> str:
        return os.path.join(self.CONFIG_DIR, '.secret_key')

    @property
    def LOG_FILE(self) -> str:
        return os.path.join(self.DATA_DIR, 'backupflow.log')

    @property
    def HISTORY_DATABASE_URI(self) -> str:
        return f"sqlite:///{os.path.join(self.DATA_DIR, 'history.db')}"

    def ensure_directories(self):
        """Create the config and data directories (config dir is private)."""
        os.makedirs(self.CONFIG_DIR, mode=0o700, exist_ok=True)
        os.makedirs(self.DATA_DIR, exist_ok=True)
        os.makedirs(self.TEMP_DIR, exist_ok=True)


class DevelopmentConfig(Config):
    """Development configuration"""
    CONSOLE_LOG_LEVEL = 'DEBUG'

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    CONFIG_DIR = os.path.join(BASE_DIR, 'data', 'config')
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(BASE_DIR, 'data', 'temp')


class ProductionConfig(Config):
    """Production configuration"""


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name: str = None, **overrides) -> Config:
    """
    Build a settings instance.

    Args:
        config_name: Key in ``config`` (defaults to BACKUPFLOW_ENV or 'production')
        **overrides: Attribute overrides, e.g. CONFIG_DIR for a custom location

    Returns:
        Config instance
    """
    if config_name is None:
        config_name = os.environ.get('BACKUPFLOW_ENV', 'production')

    settings = config[config_name]()
    for key, value in overrides.items():
        if value is not None:
            setattr(settings, key, value)
    return settings
