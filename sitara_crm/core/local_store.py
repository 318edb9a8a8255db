"""
Local persistence for Sitara CRM.

SQLite key/value store with WAL mode and a finite capacity, plus the
manager that layers quota-aware writes, bounded backup rotation, import
validation and export framing on top of it.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import BackupNotFoundError, PersistenceError, QuotaExceededError, StorageError
from .migration import migrate, needs_migration
from .schema import (
    BACKUP_INDEX_KEY,
    BACKUP_PREFIX,
    COLLECTIONS,
    CURRENT_VERSION,
    DATA_KEY,
    EXPORT_SOURCE,
    MAX_BACKUPS,
    MIGRATION_FLAG_KEY,
    QUOTA_PRUNE_KEEP,
    STORAGE_CAPACITY_BYTES,
    BackupRecord,
    BackupType,
    Snapshot,
    parse_version,
    strip_export_metadata,
    utc_now,
)

logger = logging.getLogger(__name__)


SCHEMA = """
-- Key/value entries: live snapshot, backups, backup index, flags
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    size INTEGER NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);
"""


def entry_size(key: str, value: str) -> int:
    """Bytes an entry occupies against the store capacity."""
    return len(key.encode('utf-8')) + len(value.encode('utf-8'))


def format_size(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size / 1024 / 1024:.2f} MB"
    return f"{size / 1024:.2f} KB"


class KeyValueStore:
    """SQLite-backed key/value store with a byte capacity."""

    def __init__(self, db_path: Union[str, Path], capacity_bytes: int = STORAGE_CAPACITY_BYTES):
        self.capacity_bytes = capacity_bytes
        self._memory_conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

        if str(db_path) == ':memory:':
            self.db_path = None
            self._memory_conn = sqlite3.connect(':memory:', check_same_thread=False)
            self._memory_conn.row_factory = sqlite3.Row
        else:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    @contextmanager
    def connection(self):
        """
        Context manager for database connections.

        sqlite3 errors surface as StorageError so callers only deal with
        the persistence error taxonomy.
        """
        try:
            with self._transaction() as conn:
                yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Local store error: {e}") from e

    @contextmanager
    def _transaction(self):
        if self._memory_conn is not None:
            with self._lock:
                try:
                    yield self._memory_conn
                    self._memory_conn.commit()
                except Exception:
                    self._memory_conn.rollback()
                    raise
            return

        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self):
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def get_item(self, key: str) -> Optional[str]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
            return row['value'] if row else None

    def has_item(self, key: str) -> bool:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
            return row is not None

    def set_item(self, key: str, value: str) -> int:
        """
        Write an entry. Raises QuotaExceededError if the store would exceed
        its capacity; the previous value (if any) is left untouched.

        Returns:
            Size in bytes of the stored entry
        """
        size = entry_size(key, value)
        with self.connection() as conn:
            used = conn.execute(
                "SELECT COALESCE(SUM(size), 0) FROM kv_store WHERE key != ?", (key,)
            ).fetchone()[0]
            if used + size > self.capacity_bytes:
                raise QuotaExceededError(
                    f"Writing {key} ({format_size(size)}) exceeds capacity "
                    f"({format_size(used)} of {format_size(self.capacity_bytes)} used)"
                )
            conn.execute("""
                INSERT INTO kv_store (key, value, size, updated_at)
                VALUES (?, ?, ?, datetime('now'))
                ON CONFLICT(key) DO UPDATE SET value = ?, size = ?, updated_at = datetime('now')
            """, (key, value, size, value, size))
        return size

    def remove_item(self, key: str) -> bool:
        with self.connection() as conn:
            cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def keys(self, prefix: Optional[str] = None) -> List[str]:
        with self.connection() as conn:
            if prefix:
                rows = conn.execute(
                    "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix)
                ).fetchall()
            else:
                rows = conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()
            return [row['key'] for row in rows]

    def sizes(self) -> Dict[str, int]:
        with self.connection() as conn:
            rows = conn.execute("SELECT key, size FROM kv_store").fetchall()
            return {row['key']: row['size'] for row in rows}


# ============================================
# RESULT TYPES
# ============================================

@dataclass
class SaveResult:
    """Outcome of a quota-aware write."""
    success: bool
    size: int = 0
    error: Optional[PersistenceError] = None
    pruned: int = 0


@dataclass
class ValidationResult:
    """Outcome of structural import validation."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'stats': dict(self.stats),
        }


# ============================================
# MANAGER
# ============================================

class LocalStoreManager:
    """
    Quota-aware persistence of snapshots and backups.

    The store capacity is the only backpressure: a write that does not fit
    triggers one prune-and-retry cycle in ``safe_save``.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_backups: int = MAX_BACKUPS,
        quota_prune_keep: int = QUOTA_PRUNE_KEEP,
        estimated_max: Optional[int] = None,
    ):
        self.store = store
        self.max_backups = max_backups
        self.quota_prune_keep = quota_prune_keep
        self.estimated_max = estimated_max or store.capacity_bytes

    # ==========================================================================
    # Raw values
    # ==========================================================================

    def safe_save(self, key: str, value: Any) -> SaveResult:
        """
        Serialize and write ``value`` under ``key``.

        On a quota failure, old backups are pruned down to
        ``quota_prune_keep`` and the write is retried exactly once.
        """
        if isinstance(value, Snapshot):
            value = value.to_dict()

        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot serialize value for {key}: {e}")
            return SaveResult(False, error=PersistenceError(f"Cannot serialize value for {key}: {e}"))

        try:
            size = self.store.set_item(key, payload)
            return SaveResult(True, size=size)
        except QuotaExceededError as e:
            logger.warning(f"Storage quota exceeded writing {key}: {e}. Pruning backups to {self.quota_prune_keep}")
        except StorageError as e:
            logger.error(f"Failed to write {key}: {e}")
            return SaveResult(False, error=e)

        try:
            pruned = self.prune_backups(self.quota_prune_keep)
        except StorageError as e:
            logger.error(f"Failed to prune backups while saving {key}: {e}")
            return SaveResult(False, error=e)

        try:
            size = self.store.set_item(key, payload)
        except QuotaExceededError as e:
            logger.error(f"Storage quota still exceeded after pruning {pruned} backups: {key} not saved")
            return SaveResult(False, error=QuotaExceededError(str(e)), pruned=pruned)
        except StorageError as e:
            logger.error(f"Failed to write {key} after pruning: {e}")
            return SaveResult(False, error=e, pruned=pruned)

        logger.info(f"Saved {key} after pruning {pruned} backups")
        return SaveResult(True, size=size, pruned=pruned)

    def safe_load(self, key: str) -> Any:
        """Load and parse a value. Returns None if absent or unreadable."""
        try:
            raw = self.store.get_item(key)
        except StorageError as e:
            logger.error(f"Failed to read {key}: {e}")
            return None

        if raw is None:
            return None

        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring malformed payload under {key}: {e}")
            return None

    # ==========================================================================
    # Live snapshot
    # ==========================================================================

    def has_local_data(self) -> bool:
        try:
            return self.store.has_item(DATA_KEY)
        except StorageError as e:
            logger.error(f"Failed to check local data: {e}")
            return False

    def load_raw_data(self) -> Any:
        return self.safe_load(DATA_KEY)

    def save_snapshot(self, snapshot: Snapshot) -> SaveResult:
        result = self.safe_save(DATA_KEY, snapshot)
        if result.success:
            logger.debug(f"Saved snapshot ({format_size(result.size)}, change {snapshot.change_count})")
        return result

    def load_snapshot(self) -> Optional[Snapshot]:
        """
        Load the live snapshot, migrating stale data in memory.

        The stored payload is not rewritten; it is upgraded again (idempotently)
        on every load until the next save.
        """
        raw = self.load_raw_data()
        if raw is None:
            return None

        if needs_migration(raw):
            version = raw.get('version') if isinstance(raw, dict) else None
            logger.info(f"Local snapshot is at version {version or 'unversioned'}, migrating to {CURRENT_VERSION}")

        snapshot = migrate(raw)
        counts = snapshot.record_counts()
        logger.info(
            f"Loaded local snapshot: {counts['customers']} customers, "
            f"{counts['brokers']} brokers, {counts['projects']} projects"
        )
        return snapshot

    def clear_local_data(self) -> Optional[BackupRecord]:
        """Remove the live snapshot after taking a backup of it."""
        backup = None
        current = self.load_snapshot()
        if current is not None:
            backup = self.create_backup(current, BackupType.MANUAL)
        self.store.remove_item(DATA_KEY)
        logger.info("Local data cleared" + (f" (backup {backup.key})" if backup else ""))
        return backup

    # ==========================================================================
    # Migration flag
    # ==========================================================================

    def get_migration_flag(self) -> Optional[str]:
        """Return 'completed', 'skipped' or None."""
        try:
            raw = self.store.get_item(MIGRATION_FLAG_KEY)
        except StorageError as e:
            logger.error(f"Failed to read migration flag: {e}")
            return None

        if raw is None:
            return None
        # Older releases stored the bare strings 'true' / 'skipped'
        if raw in ('true', '"true"'):
            return 'completed'
        if raw in ('skipped', '"skipped"'):
            return 'skipped'
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Unrecognized migration flag value: {raw[:40]}")
            return None
        if isinstance(value, dict):
            return value.get('status')
        return None

    def set_migration_flag(self, status: str) -> SaveResult:
        return self.safe_save(MIGRATION_FLAG_KEY, {'status': status, 'updatedAt': utc_now()})

    # ==========================================================================
    # Backups
    # ==========================================================================

    def _load_index(self) -> List[BackupRecord]:
        """Parsed backup index. Store errors propagate as StorageError."""
        stored = self.store.get_item(BACKUP_INDEX_KEY)
        try:
            raw = json.loads(stored) if stored is not None else None
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring malformed backup index: {e}")
            raw = None

        if not isinstance(raw, list):
            if raw is not None:
                logger.warning("Backup index is not a list, treating as empty")
            return []

        records = []
        for entry in raw:
            if not isinstance(entry, dict) or not entry.get('key'):
                logger.warning(f"Skipping malformed backup index entry: {entry!r}")
                continue
            try:
                records.append(BackupRecord.from_dict(entry))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed backup index entry: {e}")
        return records

    def _write_index(self, records: List[BackupRecord]) -> None:
        payload = json.dumps([r.to_dict() for r in records], ensure_ascii=False)
        self.store.set_item(BACKUP_INDEX_KEY, payload)

    def _new_backup_key(self) -> str:
        stamp = int(time.time() * 1000)
        key = f"{BACKUP_PREFIX}{stamp}"
        while self.store.has_item(key):
            stamp += 1
            key = f"{BACKUP_PREFIX}{stamp}"
        return key

    def create_backup(self, snapshot: Snapshot, backup_type: BackupType = BackupType.MANUAL) -> BackupRecord:
        """
        Store a point-in-time copy of ``snapshot`` and record it in the index.

        The index is kept most-recent-first and capped at ``max_backups``;
        evicted entries lose their payload too.

        Raises:
            QuotaExceededError: payload could not be written
            StorageError: the local store could not be read or written
        """
        created_at = utc_now()
        key = self._new_backup_key()

        payload = snapshot.to_dict()
        payload['backupType'] = backup_type.value
        payload['createdAt'] = created_at

        result = self.safe_save(key, payload)
        if not result.success:
            raise result.error or QuotaExceededError(f"Backup {key} could not be written")

        record = BackupRecord(
            key=key,
            type=backup_type,
            created_at=created_at,
            size=result.size,
            record_counts=snapshot.record_counts(),
        )

        index = [record] + [r for r in self._load_index() if r.key != key]
        evicted = index[self.max_backups:]
        index = index[:self.max_backups]

        for old in evicted:
            self.store.remove_item(old.key)
        try:
            self._write_index(index)
        except PersistenceError:
            self.store.remove_item(key)
            raise

        if evicted:
            logger.info(f"Evicted {len(evicted)} old backups")
        logger.info(f"Created {backup_type.value} backup {key} ({format_size(record.size)})")
        return record

    def list_backups(self) -> List[BackupRecord]:
        """Backup index, most recent first, with payload existence checked."""
        records = self._load_index()
        for record in records:
            record.exists = self.store.has_item(record.key)
        return records

    def restore_backup(self, key: str) -> Snapshot:
        """
        Load a backup payload as a current-version snapshot.

        Raises:
            BackupNotFoundError: payload missing (a dangling index entry is
                removed) or not a snapshot object
        """
        payload = self.safe_load(key)
        if payload is not None and not isinstance(payload, dict):
            logger.warning(f"Backup {key} holds a {type(payload).__name__}, not a snapshot")
            raise BackupNotFoundError(key)

        if payload is None:
            index = self._load_index()
            remaining = [r for r in index if r.key != key]
            if len(remaining) != len(index):
                logger.warning(f"Removing dangling backup index entry {key}")
                self._write_index(remaining)
            raise BackupNotFoundError(key)

        snapshot = migrate(payload)
        logger.info(f"Restored backup {key}")
        return snapshot

    def delete_backup(self, key: str) -> bool:
        removed = self.store.remove_item(key)
        index = self._load_index()
        remaining = [r for r in index if r.key != key]
        if len(remaining) != len(index):
            self._write_index(remaining)
        return removed or len(remaining) != len(index)

    def prune_backups(self, keep: int) -> int:
        """
        Keep only the ``keep`` most recent backups. Orphaned backup payloads
        (not listed in the index) are removed as well.

        Returns:
            Number of payloads deleted
        """
        index = sorted(self._load_index(), key=lambda r: r.created_at, reverse=True)
        kept = index[:keep]
        kept_keys = {r.key for r in kept}

        deleted = 0
        for key in self.store.keys(BACKUP_PREFIX):
            if key == BACKUP_INDEX_KEY or key in kept_keys:
                continue
            if self.store.remove_item(key):
                deleted += 1

        if len(kept) != len(index):
            try:
                self._write_index(kept)
            except (QuotaExceededError, StorageError) as e:
                logger.error(f"Failed to rewrite backup index after pruning: {e}")

        if deleted:
            logger.info(f"Pruned {deleted} backups (keeping {len(kept)})")
        return deleted

    # ==========================================================================
    # Import / export
    # ==========================================================================

    def validate_import(self, raw: Any) -> ValidationResult:
        """
        Structural validation of an import payload.

        A non-object payload is the only error that stops validation. Any
        known collection that is present must be a list. Duplicate ids,
        missing ids and a newer schema version are warnings.
        """
        errors: List[str] = []
        warnings: List[str] = []
        stats: Dict[str, Any] = {'version': None, 'collections': {}, 'totalRecords': 0, 'hasSettings': False}

        data = raw
        if isinstance(raw, (str, bytes)):
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                errors.append(f"Payload is not valid JSON: {e}")
                return ValidationResult(False, errors, warnings, stats)

        if not isinstance(data, dict):
            errors.append(f"Payload must be a JSON object, got {type(data).__name__}")
            return ValidationResult(False, errors, warnings, stats)

        data = strip_export_metadata(data)

        version = data.get('version')
        stats['version'] = version
        if version is None:
            warnings.append("No schema version; payload will be migrated as legacy data")
        else:
            parsed = parse_version(version)
            if parsed is None:
                warnings.append(f"Unrecognized schema version {version!r}")
            elif parsed > parse_version(CURRENT_VERSION):
                warnings.append(f"Schema version {version} is newer than supported version {CURRENT_VERSION}")

        present = 0
        for name in COLLECTIONS:
            if name not in data:
                continue
            items = data[name]
            if not isinstance(items, list):
                errors.append(f"'{name}' must be an array, got {type(items).__name__}")
                continue

            present += 1
            stats['collections'][name] = len(items)
            stats['totalRecords'] += len(items)

            seen = set()
            duplicates = set()
            missing_ids = 0
            non_objects = 0
            for item in items:
                if not isinstance(item, dict):
                    non_objects += 1
                    continue
                record_id = item.get('id')
                if record_id in (None, ''):
                    missing_ids += 1
                    continue
                if str(record_id) in seen:
                    duplicates.add(str(record_id))
                seen.add(str(record_id))

            if duplicates:
                sample = ', '.join(sorted(duplicates)[:5])
                warnings.append(f"'{name}' contains {len(duplicates)} duplicate ids ({sample})")
            if missing_ids:
                warnings.append(f"'{name}' has {missing_ids} records without an id")
            if non_objects:
                warnings.append(f"'{name}' has {non_objects} entries that are not objects and will be dropped")

        if present == 0 and not errors:
            warnings.append("Payload contains no known collections")

        if 'settings' in data:
            if isinstance(data['settings'], dict):
                stats['hasSettings'] = True
            else:
                warnings.append("'settings' is not an object and will be replaced by defaults")

        return ValidationResult(not errors, errors, warnings, stats)

    def prepare_import(self, raw: Any) -> Tuple[ValidationResult, Optional[Snapshot]]:
        """Validate, strip framing and migrate an import payload."""
        validation = self.validate_import(raw)
        if not validation.valid:
            return validation, None

        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        return validation, migrate(data)

    def export_framed(self, snapshot: Union[Snapshot, Dict[str, Any]]) -> Dict[str, Any]:
        """Wrap a snapshot with export metadata. The input is not modified."""
        payload = snapshot.to_dict() if isinstance(snapshot, Snapshot) else json.loads(json.dumps(snapshot))
        payload['exportInfo'] = {
            'exportedAt': utc_now(),
            'version': payload.get('version') or CURRENT_VERSION,
            'source': EXPORT_SOURCE,
        }
        return payload

    # ==========================================================================
    # Observability
    # ==========================================================================

    def get_storage_info(self) -> Dict[str, Any]:
        """Usage report. Purely observational, never blocks writes."""
        try:
            sizes = self.store.sizes()
        except StorageError as e:
            logger.error(f"Failed to read storage sizes: {e}")
            sizes = {}

        used = sum(sizes.values())
        breakdown = {
            key: {'size': size, 'sizeFormatted': format_size(size)}
            for key, size in sorted(sizes.items())
        }
        data_size = sizes.get(DATA_KEY, 0)

        return {
            'used': used,
            'usedFormatted': format_size(used),
            'estimatedMax': self.estimated_max,
            'estimatedMaxFormatted': format_size(self.estimated_max),
            'percentUsed': round(used / self.estimated_max * 100, 2) if self.estimated_max else 0.0,
            'itemCount': len(sizes),
            'breakdown': breakdown,
            'crmDataSize': data_size,
            'crmDataSizeFormatted': format_size(data_size),
        }
