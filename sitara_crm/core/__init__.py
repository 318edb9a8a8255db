"""
Sitara CRM Core Package

Persistence engine:
- Snapshot schema and entity registry
- Snapshot migration
- Local store (SQLite key/value, backups, import/export)
"""

from sitara_crm.core.errors import PersistenceError
from sitara_crm.core.local_store import KeyValueStore, LocalStoreManager
from sitara_crm.core.migration import migrate, needs_migration
from sitara_crm.core.schema import CURRENT_VERSION, Snapshot

__all__ = [
    "CURRENT_VERSION",
    "KeyValueStore",
    "LocalStoreManager",
    "PersistenceError",
    "Snapshot",
    "migrate",
    "needs_migration",
]
