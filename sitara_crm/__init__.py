"""
Sitara CRM Persistence Engine

Keeps the CRM's business dataset (customers, brokers, projects, receipts, ...)
on a remote data service when it is reachable and in a local store when it
is not, migrating older snapshots to the current schema along the way.
"""

from typing import Any, Dict, Optional

__version__ = "4.0.0"

from .adapters.crm_api import CRMApiClient
from .core.local_store import KeyValueStore, LocalStoreManager
from .core.orchestrator import PersistenceOrchestrator
from .core.scheduler import AutoBackupScheduler
from .utils.config import PersistenceConfig, load_config
from .utils.logging import setup_logging, setup_logging_from_config


def create_orchestrator(
    config: Optional[Dict[str, Any]] = None,
    gateway=None,
    confirm_migration=None,
    configure_logging: bool = False,
) -> PersistenceOrchestrator:
    """
    Wire an orchestrator from configuration.

    Args:
        config: ``load_config`` dictionary (loaded from config/config.yaml if None)
        gateway: RemoteDataGateway to use (CRMApiClient built from config if None)
        confirm_migration: Callback asked before migrating legacy local data
        configure_logging: Also configure logging from the settings

    Returns:
        Unbooted PersistenceOrchestrator
    """
    if config is None:
        config = load_config()
    settings = PersistenceConfig.from_config(config)

    errors = settings.validate()
    if errors:
        raise ValueError(f"Invalid configuration: {'; '.join(errors)}")

    if configure_logging:
        setup_logging_from_config(settings)

    store = LocalStoreManager(
        KeyValueStore(settings.DB_PATH, capacity_bytes=settings.STORAGE_CAPACITY_BYTES),
        max_backups=settings.MAX_BACKUPS,
        quota_prune_keep=settings.QUOTA_PRUNE_KEEP,
    )

    if gateway is None:
        gateway = CRMApiClient(
            settings.API_URL,
            timeout=settings.API_TIMEOUT,
            migration_timeout=settings.MIGRATION_TIMEOUT,
        )

    return PersistenceOrchestrator(
        store,
        gateway=gateway,
        config=settings,
        confirm_migration=confirm_migration,
    )


__all__ = [
    "AutoBackupScheduler",
    "CRMApiClient",
    "KeyValueStore",
    "LocalStoreManager",
    "PersistenceConfig",
    "PersistenceOrchestrator",
    "create_orchestrator",
    "load_config",
    "setup_logging",
]
