"""
Configuration Management

Load and validate configuration from YAML and environment variables.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import yaml
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent.parent.parent

# SITARA_* variable -> (section, key)
ENV_OVERRIDES = {
    'SITARA_API_URL': ('api', 'url'),
    'SITARA_API_TIMEOUT': ('api', 'timeout'),
    'SITARA_PROBE_TIMEOUT': ('timeouts', 'probe'),
    'SITARA_LOAD_TIMEOUT': ('timeouts', 'load'),
    'SITARA_MIGRATION_TIMEOUT': ('timeouts', 'migration'),
    'SITARA_DB_PATH': ('storage', 'path'),
    'SITARA_STORAGE_CAPACITY': ('storage', 'capacity_bytes'),
    'SITARA_MAX_BACKUPS': ('backups', 'max_backups'),
    'SITARA_QUOTA_PRUNE_KEEP': ('backups', 'quota_prune_keep'),
    'SITARA_AUTO_BACKUP_INTERVAL': ('backups', 'auto_interval'),
    'SITARA_AUTO_BACKUP_THRESHOLD': ('backups', 'auto_change_threshold'),
    'SITARA_AUTO_MIGRATE': ('migration', 'auto_migrate'),
    'SITARA_LOG_LEVEL': ('logging', 'level'),
    'SITARA_LOG_FILE': ('logging', 'file'),
    'SITARA_LOG_MAX_SIZE_MB': ('logging', 'max_size_mb'),
    'SITARA_LOG_BACKUP_COUNT': ('logging', 'backup_count'),
}


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    env_path: Optional[Union[str, Path]] = None
) -> Dict[str, Any]:
    """
    Load configuration from YAML file and environment variables.

    Environment variables override YAML values.

    Args:
        config_path: Path to YAML config file (default: config/config.yaml)
        env_path: Path to .env file (default: config/.env)

    Returns:
        Configuration dictionary
    """
    if env_path is None:
        env_path = PROJECT_ROOT / "config" / ".env"
    else:
        env_path = Path(env_path)

    if config_path is None:
        config_path = PROJECT_ROOT / "config" / "config.yaml"
    else:
        config_path = Path(config_path)

    # Load environment variables
    if env_path.exists():
        load_dotenv(env_path)
    else:
        root_env = PROJECT_ROOT / ".env"
        if root_env.exists():
            load_dotenv(root_env)

    # Load YAML config
    config = {}
    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}

    # Expand environment variable references in config
    config = _expand_env_vars(config)

    # Override with direct environment variables
    config = _apply_env_overrides(config)

    # Ensure defaults
    config.setdefault('storage', {})
    config['storage'].setdefault('path', './data/sitara_crm.db')

    return config


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} references in config values."""
    if isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    elif isinstance(obj, str) and obj.startswith('${') and obj.endswith('}'):
        var_name = obj[2:-1]
        return os.environ.get(var_name, obj)
    return obj


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply direct SITARA_* environment variable overrides."""
    for env_var, (section, key) in ENV_OVERRIDES.items():
        if os.environ.get(env_var):
            config.setdefault(section, {})[key] = os.environ[env_var]
    return config


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class PersistenceConfig:
    """Typed settings for the persistence engine."""

    # Remote data service
    API_URL: str = 'http://localhost:5000/api'
    API_TIMEOUT: float = 30.0

    # Deadlines (seconds)
    PROBE_TIMEOUT: float = 5.0
    LOAD_TIMEOUT: float = 30.0
    MIGRATION_TIMEOUT: float = 60.0

    # Local store
    DB_PATH: str = './data/sitara_crm.db'
    STORAGE_CAPACITY_BYTES: int = 10 * 1024 * 1024

    # Backups
    MAX_BACKUPS: int = 10
    QUOTA_PRUNE_KEEP: int = 3
    AUTO_BACKUP_INTERVAL: float = 3600.0
    AUTO_BACKUP_CHANGE_THRESHOLD: int = 50

    # Migration
    AUTO_MIGRATE: bool = True

    # Logging
    LOG_LEVEL: str = 'INFO'
    LOG_FILE: Optional[str] = None
    LOG_MAX_SIZE_MB: int = 10
    LOG_BACKUP_COUNT: int = 5

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'PersistenceConfig':
        """Build from a ``load_config`` dictionary. Missing keys keep defaults."""
        api = config.get('api') or {}
        timeouts = config.get('timeouts') or {}
        storage = config.get('storage') or {}
        backups = config.get('backups') or {}
        migration = config.get('migration') or {}
        logging_cfg = config.get('logging') or {}

        defaults = cls()
        return cls(
            API_URL=str(api.get('url', defaults.API_URL)),
            API_TIMEOUT=float(api.get('timeout', defaults.API_TIMEOUT)),
            PROBE_TIMEOUT=float(timeouts.get('probe', defaults.PROBE_TIMEOUT)),
            LOAD_TIMEOUT=float(timeouts.get('load', defaults.LOAD_TIMEOUT)),
            MIGRATION_TIMEOUT=float(timeouts.get('migration', defaults.MIGRATION_TIMEOUT)),
            DB_PATH=str(storage.get('path', defaults.DB_PATH)),
            STORAGE_CAPACITY_BYTES=int(storage.get('capacity_bytes', defaults.STORAGE_CAPACITY_BYTES)),
            MAX_BACKUPS=int(backups.get('max_backups', defaults.MAX_BACKUPS)),
            QUOTA_PRUNE_KEEP=int(backups.get('quota_prune_keep', defaults.QUOTA_PRUNE_KEEP)),
            AUTO_BACKUP_INTERVAL=float(backups.get('auto_interval', defaults.AUTO_BACKUP_INTERVAL)),
            AUTO_BACKUP_CHANGE_THRESHOLD=int(
                backups.get('auto_change_threshold', defaults.AUTO_BACKUP_CHANGE_THRESHOLD)
            ),
            AUTO_MIGRATE=_as_bool(migration.get('auto_migrate', defaults.AUTO_MIGRATE)),
            LOG_LEVEL=str(logging_cfg.get('level', defaults.LOG_LEVEL)),
            LOG_FILE=logging_cfg.get('file') or None,
            LOG_MAX_SIZE_MB=int(logging_cfg.get('max_size_mb', defaults.LOG_MAX_SIZE_MB)),
            LOG_BACKUP_COUNT=int(logging_cfg.get('backup_count', defaults.LOG_BACKUP_COUNT)),
        )

    def validate(self) -> List[str]:
        """Validate configuration. Returns list of errors."""
        errors = []

        if not self.API_URL.startswith(('http://', 'https://')):
            errors.append(f"api.url must be an http(s) URL, got {self.API_URL!r}")

        for name in ('API_TIMEOUT', 'PROBE_TIMEOUT', 'LOAD_TIMEOUT', 'MIGRATION_TIMEOUT'):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        if self.STORAGE_CAPACITY_BYTES <= 0:
            errors.append("STORAGE_CAPACITY_BYTES must be positive")

        if self.MAX_BACKUPS < 1:
            errors.append("MAX_BACKUPS must be at least 1")

        if not 0 <= self.QUOTA_PRUNE_KEEP <= self.MAX_BACKUPS:
            errors.append("QUOTA_PRUNE_KEEP must be between 0 and MAX_BACKUPS")

        if self.AUTO_BACKUP_INTERVAL < 0:
            errors.append("AUTO_BACKUP_INTERVAL must not be negative")

        if self.AUTO_BACKUP_CHANGE_THRESHOLD < 0:
            errors.append("AUTO_BACKUP_CHANGE_THRESHOLD must not be negative")

        if self.LOG_LEVEL.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"Unknown log level: {self.LOG_LEVEL}")

        if self.LOG_MAX_SIZE_MB < 1 or self.LOG_BACKUP_COUNT < 0:
            errors.append("LOG_MAX_SIZE_MB must be at least 1 and LOG_BACKUP_COUNT not negative")

        return errors
