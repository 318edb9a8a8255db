"""
Sitara CRM Snapshot Schema

The versioned data contract for the business dataset: collection names,
entity registry, storage keys, defaults, and the Snapshot / BackupRecord
containers. Records themselves are opaque JSON objects (camelCase keys).
"""

import copy
import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================
# VERSIONS & CONSTANTS
# ============================================

CURRENT_VERSION = '4.0'

# Commission default shipped by mistake in 3.x releases
LEGACY_COMMISSION_RATE = 2.5
DEFAULT_COMMISSION_RATE = 1

MAX_BACKUPS = 10
QUOTA_PRUNE_KEEP = 3
STORAGE_CAPACITY_BYTES = 10 * 1024 * 1024

EXPORT_SOURCE = 'Sitara CRM'

# Local store key namespace
DATA_KEY = 'sitara_crm_data'
BACKUP_PREFIX = 'sitara_crm_backup_'
BACKUP_INDEX_KEY = 'sitara_crm_backup_index'
MIGRATION_FLAG_KEY = 'sitara_crm_migrated'

COLLECTIONS = (
    'customers',
    'brokers',
    'companyReps',
    'projects',
    'receipts',
    'interactions',
    'inventory',
    'commissionPayments',
    'masterProjects',
)

# Top-level keys added by export/backup framing, never part of a snapshot
EXPORT_METADATA_KEYS = (
    'exportInfo',
    'exportDate',
    'exportVersion',
    'backupType',
    'backupDate',
    'backupName',
    'createdAt',
)

DEFAULT_SETTINGS: Dict[str, Any] = {
    'currency': 'PKR',
    'currencySymbol': '₨',
    'defaultCycle': 'quarterly',
    'followUpDays': [1, 3, 7, 14, 30],
    'commissionRate': DEFAULT_COMMISSION_RATE,
    'defaultCommissionRate': DEFAULT_COMMISSION_RATE,
    'defaultBrokerCommission': DEFAULT_COMMISSION_RATE,
    'defaultCompanyRepCommission': DEFAULT_COMMISSION_RATE,
}


class MigrationStatus(str, Enum):
    """Boot/migration state owned by the orchestrator."""
    IDLE = 'idle'
    CHECKING = 'checking'
    MIGRATING = 'migrating'
    COMPLETED = 'completed'
    FAILED = 'failed'


class BackupType(str, Enum):
    MANUAL = 'manual'
    AUTO = 'auto'


class Backend(str, Enum):
    """Which persistence path served an operation."""
    REMOTE = 'remote'
    LOCAL = 'local'


# ============================================
# ENTITY REGISTRY
# ============================================

@dataclass(frozen=True)
class EntitySpec:
    """Describes one entity type: where it lives and which fields it owns."""
    name: str
    collection: str
    id_prefix: str
    endpoint: str
    fields: frozenset
    defaults: Dict[str, Any] = field(default_factory=dict)


_COMMON_FIELDS = {'id', 'createdAt', 'updatedAt'}

ENTITY_TYPES: Dict[str, EntitySpec] = {
    spec.name: spec for spec in (
        EntitySpec(
            name='customer',
            collection='customers',
            id_prefix='cust',
            endpoint='customers',
            fields=frozenset(_COMMON_FIELDS | {
                'name', 'cnic', 'phone', 'email', 'company', 'address',
                'type', 'status', 'linkedBrokerId', 'notes',
            }),
            defaults={'type': 'customer', 'status': 'active'},
        ),
        EntitySpec(
            name='broker',
            collection='brokers',
            id_prefix='broker',
            endpoint='brokers',
            fields=frozenset(_COMMON_FIELDS | {
                'name', 'phone', 'cnic', 'email', 'address', 'company',
                'commissionRate', 'bankDetails', 'notes', 'status',
                'linkedCustomerId',
            }),
            defaults={'status': 'active', 'commissionRate': DEFAULT_COMMISSION_RATE},
        ),
        EntitySpec(
            name='companyRep',
            collection='companyReps',
            id_prefix='rep',
            endpoint='company-reps',
            fields=frozenset(_COMMON_FIELDS | {
                'name', 'phone', 'email', 'designation', 'commissionRate',
                'status', 'notes',
            }),
            defaults={'status': 'active', 'commissionRate': DEFAULT_COMMISSION_RATE},
        ),
        EntitySpec(
            name='project',
            collection='projects',
            id_prefix='proj',
            endpoint='projects',
            fields=frozenset(_COMMON_FIELDS | {
                'customerId', 'brokerId', 'brokerCommissionRate',
                'companyRepId', 'companyRepCommissionRate', 'name', 'unit',
                'marlas', 'rate', 'sale', 'received', 'status', 'cycle',
                'notes', 'installments', 'inventoryId',
            }),
            defaults={'status': 'active', 'installments': []},
        ),
        EntitySpec(
            name='receipt',
            collection='receipts',
            id_prefix='rcpt',
            endpoint='receipts',
            fields=frozenset(_COMMON_FIELDS | {
                'customerId', 'projectId', 'installmentId', 'amount', 'date',
                'method', 'reference', 'notes', 'receiptNumber',
                'customerName', 'projectName',
            }),
            defaults={'method': 'cash'},
        ),
        EntitySpec(
            name='interaction',
            collection='interactions',
            id_prefix='int',
            endpoint='interactions',
            fields=frozenset(_COMMON_FIELDS | {
                'contactType', 'customerId', 'brokerId', 'type', 'status',
                'priority', 'date', 'notes', 'nextFollowUp', 'contacts',
            }),
            defaults={'contactType': 'customer', 'status': 'follow_up', 'priority': 'medium'},
        ),
        EntitySpec(
            name='inventoryItem',
            collection='inventory',
            id_prefix='inv',
            endpoint='inventory',
            fields=frozenset(_COMMON_FIELDS | {
                'projectName', 'block', 'unitShopNumber', 'unit', 'unitType',
                'marlas', 'ratePerMarla', 'totalValue', 'saleValue',
                'plotFeatures', 'plotFeature', 'status', 'transactionId',
            }),
            defaults={'status': 'available'},
        ),
        EntitySpec(
            name='commissionPayment',
            collection='commissionPayments',
            id_prefix='cpay',
            endpoint='commission-payments',
            fields=frozenset(_COMMON_FIELDS | {
                'projectId', 'recipientId', 'recipientType', 'recipientName',
                'amount', 'paidAmount', 'remainingAmount', 'paymentDate',
                'paymentMethod', 'paymentReference', 'notes', 'status',
            }),
            defaults={'status': 'pending'},
        ),
        EntitySpec(
            name='masterProject',
            collection='masterProjects',
            id_prefix='mproj',
            endpoint='master-projects',
            fields=frozenset(_COMMON_FIELDS | {
                'name', 'description', 'location', 'totalUnits',
                'availableUnits', 'soldUnits', 'reservedUnits',
                'blockedUnits',
            }),
        ),
    )
}


def get_entity_spec(entity_type: str) -> Optional[EntitySpec]:
    """Look up an entity by type name ('broker') or collection ('brokers')."""
    spec = ENTITY_TYPES.get(entity_type)
    if spec:
        return spec
    for candidate in ENTITY_TYPES.values():
        if candidate.collection == entity_type:
            return candidate
    return None


# ============================================
# HELPERS
# ============================================

def utc_now() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def generate_id(prefix: str = 'id') -> str:
    """Generate a record id like ``cust_1712345678901_k3j9x0a1b``."""
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def default_settings() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_SETTINGS)


def merge_record(spec: EntitySpec, existing: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a partial update to a record, accepting only recognized fields.

    Unknown keys in ``changes`` are ignored (and logged). The record id can
    never be changed through a merge. Fields already present on ``existing``
    are kept even when not recognized, so opaque data survives round trips.

    Args:
        spec: Entity specification for the record
        existing: Current record
        changes: Partial update

    Returns:
        New merged record (inputs are not mutated)
    """
    merged = copy.deepcopy(existing)
    ignored = []
    for key, value in changes.items():
        if key == 'id':
            continue
        if key not in spec.fields:
            ignored.append(key)
            continue
        merged[key] = copy.deepcopy(value)

    if ignored:
        logger.debug(f"Ignored unrecognized {spec.name} fields: {sorted(ignored)}")

    return merged


def filter_fields(spec: EntitySpec, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only recognized fields of a new record."""
    return {k: copy.deepcopy(v) for k, v in data.items() if k in spec.fields}


def strip_export_metadata(payload: Any) -> Any:
    """
    Return a copy of a backup/export payload with framing removed.

    Unwraps a persisted state container (``{"state": {...}}``) and drops
    export/backup metadata keys. Non-dict payloads are returned unchanged.
    """
    if not isinstance(payload, dict):
        return payload
    data = payload
    if isinstance(data.get('state'), dict) and not any(name in data for name in COLLECTIONS):
        data = data['state']
    return {k: copy.deepcopy(v) for k, v in data.items() if k not in EXPORT_METADATA_KEYS}


def parse_version(version: Any) -> Optional[tuple]:
    """Parse '4.0' into (4, 0). Returns None when unparseable."""
    if not isinstance(version, str) or not version.strip():
        return None
    try:
        return tuple(int(part) for part in version.strip().split('.'))
    except ValueError:
        return None


# ============================================
# CONTAINERS
# ============================================

def empty_collections() -> Dict[str, List[Dict[str, Any]]]:
    return {name: [] for name in COLLECTIONS}


@dataclass
class Snapshot:
    """The complete in-memory business dataset at a point in time."""
    version: str = CURRENT_VERSION
    collections: Dict[str, List[Dict[str, Any]]] = field(default_factory=empty_collections)
    settings: Dict[str, Any] = field(default_factory=default_settings)
    last_updated: Optional[str] = None
    change_count: int = 0

    def collection(self, name: str) -> List[Dict[str, Any]]:
        if name not in COLLECTIONS:
            raise KeyError(name)
        return self.collections.setdefault(name, [])

    def set_collection(self, name: str, records: List[Dict[str, Any]]) -> None:
        if name not in COLLECTIONS:
            raise KeyError(name)
        self.collections[name] = records

    def find(self, collection: str, record_id: Any) -> Optional[Dict[str, Any]]:
        """Find a record by id (string comparison, ids may arrive as ints)."""
        for record in self.collection(collection):
            if str(record.get('id')) == str(record_id):
                return record
        return None

    def record_counts(self) -> Dict[str, int]:
        return {name: len(self.collection(name)) for name in COLLECTIONS}

    def clone(self) -> 'Snapshot':
        return copy.deepcopy(self)

    def data_equals(self, other: 'Snapshot') -> bool:
        """Deep equality of business data (ignores lastUpdated/changeCount)."""
        if self.version != other.version or self.settings != other.settings:
            return False
        return all(self.collection(name) == other.collection(name) for name in COLLECTIONS)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON wire/storage shape."""
        data: Dict[str, Any] = {'version': self.version}
        for name in COLLECTIONS:
            data[name] = copy.deepcopy(self.collection(name))
        data['settings'] = copy.deepcopy(self.settings)
        data['lastUpdated'] = self.last_updated
        data['changeCount'] = self.change_count
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Snapshot':
        """
        Build from an already current-shaped dict.

        Missing or non-list collections default to empty; non-object records
        are dropped. No structural migration happens here.
        """
        snapshot = cls(version=str(data.get('version') or CURRENT_VERSION))
        for name in COLLECTIONS:
            items = data.get(name)
            if isinstance(items, list):
                snapshot.set_collection(name, [copy.deepcopy(r) for r in items if isinstance(r, dict)])
        settings = default_settings()
        if isinstance(data.get('settings'), dict):
            settings.update(copy.deepcopy(data['settings']))
        snapshot.settings = settings
        snapshot.last_updated = data.get('lastUpdated')
        try:
            snapshot.change_count = int(data.get('changeCount') or 0)
        except (TypeError, ValueError):
            snapshot.change_count = 0
        return snapshot


@dataclass
class BackupRecord:
    """Metadata entry of the bounded backup index."""
    key: str
    type: BackupType
    created_at: str
    size: int
    record_counts: Dict[str, int] = field(default_factory=dict)
    exists: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'type': self.type.value,
            'createdAt': self.created_at,
            'size': self.size,
            'recordCounts': dict(self.record_counts),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        try:
            backup_type = BackupType(data.get('type', 'manual'))
        except ValueError:
            backup_type = BackupType.MANUAL
        return cls(
            key=data['key'],
            type=backup_type,
            created_at=data.get('createdAt') or '',
            size=int(data.get('size') or 0),
            record_counts=dict(data.get('recordCounts') or {}),
        )
