"""
Persistence orchestrator.

Owns the in-memory snapshot, the change counter and the migration state
machine. At boot it probes the remote data service, migrates legacy local
data when asked to, and loads the canonical snapshot from whichever backend
is available. Every later mutation goes through ``mutate``, which tries the
remote service first and falls back to the local store.

Public operations return result objects. Store errors and gateway
exceptions are reported inside them, never raised past this boundary.
"""

import asyncio
import copy
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..adapters.base_adapter import GatewayResponse, RemoteDataGateway
from ..utils.config import PersistenceConfig
from .errors import (
    BusyError,
    DuplicateRecordError,
    ImportValidationError,
    MigrationFailureError,
    PersistenceError,
    RecordNotFoundError,
    RemoteTimeoutError,
    RemoteUnavailableError,
    UnknownEntityError,
)
from .local_store import LocalStoreManager
from .migration import clean_up_broker_data, migrate, normalize_phone, verify_broker_data
from .schema import (
    Backend,
    BackupRecord,
    BackupType,
    EntitySpec,
    MigrationStatus,
    Snapshot,
    filter_fields,
    generate_id,
    get_entity_spec,
    merge_record,
    utc_now,
)

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[Dict[str, int]], Union[bool, Awaitable[bool]]]


# ============================================
# RESULT TYPES
# ============================================

@dataclass
class BootResult:
    """What boot decided."""
    backend: Backend
    remote_available: bool
    migration_status: MigrationStatus
    migrated: bool = False
    record_counts: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class MutationResult:
    """
    Outcome of a create/update/delete/settings change.

    ``via`` names the backend that served the call. ``persisted`` is False
    when the change was applied in memory but the local write failed.
    """
    success: bool
    via: Optional[Backend] = None
    record: Optional[Dict[str, Any]] = None
    changed: bool = False
    persisted: bool = True
    error: Optional[PersistenceError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'via': self.via.value if self.via else None,
            'record': self.record,
            'changed': self.changed,
            'persisted': self.persisted,
            'error': self.error.to_dict() if self.error else None,
        }


@dataclass
class OperationResult:
    """Outcome of a backup/import/export/maintenance operation."""
    success: bool
    data: Any = None
    via: Optional[Backend] = None
    error: Optional[PersistenceError] = None
    warnings: List[str] = field(default_factory=list)


# ============================================
# ORCHESTRATOR
# ============================================

class PersistenceOrchestrator:
    """Routes persistence between the remote data service and the local store."""

    def __init__(
        self,
        store: LocalStoreManager,
        gateway: Optional[RemoteDataGateway] = None,
        config: Optional[PersistenceConfig] = None,
        confirm_migration: Optional[ConfirmCallback] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config or PersistenceConfig()
        self.confirm_migration = confirm_migration

        self.snapshot = Snapshot()
        self.change_count = 0
        self.remote_available = False
        self.migration_status = MigrationStatus.IDLE
        self.last_error: Optional[str] = None

        self._last_backup_change = 0
        self._auto_backups = 0

    @property
    def backend(self) -> Backend:
        if self.remote_available and self.gateway is not None:
            return Backend.REMOTE
        return Backend.LOCAL

    @property
    def is_busy(self) -> bool:
        return self.migration_status == MigrationStatus.MIGRATING

    @property
    def changes_since_backup(self) -> int:
        return self.change_count - self._last_backup_change

    # ==========================================================================
    # Remote helpers
    # ==========================================================================

    async def _call_remote(self, call: Awaitable[GatewayResponse], timeout: float, label: str) -> GatewayResponse:
        """Await a gateway call under a deadline. Gateway exceptions become failed responses."""
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{label} timed out after {timeout}s")
            return GatewayResponse.fail(f"{label} timed out after {timeout}s", timed_out=True)
        except Exception as e:
            logger.error(f"{label} raised {type(e).__name__}: {e}")
            return GatewayResponse.fail(f"{label} failed: {e}")

    def _remote_error(self, response: GatewayResponse, label: str) -> RemoteUnavailableError:
        if response.timed_out:
            # A timed-out service is treated as unavailable until the next probe
            self.remote_available = False
            return RemoteTimeoutError(f"{label}: {response.error}")
        return RemoteUnavailableError(f"{label}: {response.error}")

    async def _probe(self) -> bool:
        if self.gateway is None:
            return False
        response = await self._call_remote(
            self.gateway.health_check(), self.config.PROBE_TIMEOUT, 'Health check'
        )
        if not response.success:
            logger.warning(f"Remote data service unavailable ({response.error}), using local storage")
        return response.success

    # ==========================================================================
    # Boot
    # ==========================================================================

    async def boot(self) -> BootResult:
        """
        Probe, migrate if needed, and load the canonical snapshot.

        Returns:
            BootResult describing the chosen backend and migration outcome
        """
        self.migration_status = MigrationStatus.CHECKING
        self.remote_available = await self._probe()

        migrated = False
        if self.remote_available:
            try:
                migrated = await self._maybe_migrate()
            except Exception as e:
                self.migration_status = MigrationStatus.FAILED
                self.last_error = f"Migration failed: {e}"
                logger.error(self.last_error)
            if not await self._load_remote():
                logger.warning("Canonical load from remote failed, falling back to local storage")
                self.remote_available = False
                self._load_local()
        else:
            self._load_local()

        if self.migration_status == MigrationStatus.CHECKING:
            self.migration_status = MigrationStatus.IDLE

        counts = self.snapshot.record_counts()
        logger.info(
            f"Boot complete: backend={self.backend.value}, migration={self.migration_status.value}, "
            f"{counts['customers']} customers, {counts['brokers']} brokers, {counts['projects']} projects"
        )
        return BootResult(
            backend=self.backend,
            remote_available=self.remote_available,
            migration_status=self.migration_status,
            migrated=migrated,
            record_counts=counts,
            error=self.last_error,
        )

    async def _confirm(self, counts: Dict[str, int]) -> bool:
        if self.confirm_migration is None:
            return self.config.AUTO_MIGRATE
        answer = self.confirm_migration(counts)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)

    async def _maybe_migrate(self) -> bool:
        """Offer legacy local data to the remote service once."""
        if not self.store.has_local_data():
            return False

        flag = self.store.get_migration_flag()
        if flag in ('completed', 'skipped'):
            logger.debug(f"Local data already handled (migration flag: {flag})")
            return False

        raw = self.store.load_raw_data()
        if raw is None:
            return False

        legacy = migrate(raw)
        counts = legacy.record_counts()
        if not any(counts.values()):
            return False

        if not await self._confirm(counts):
            logger.info("Migration of local data declined")
            self.store.set_migration_flag('skipped')
            return False

        return await self._run_migration(legacy)

    async def _run_migration(self, legacy: Snapshot) -> bool:
        self.migration_status = MigrationStatus.MIGRATING
        counts = legacy.record_counts()
        logger.info(f"Migrating local data to remote: {sum(counts.values())} records")

        try:
            response = await self._call_remote(
                self.gateway.import_backup(legacy.to_dict()),
                self.config.MIGRATION_TIMEOUT,
                'Migration',
            )
        except Exception as e:
            response = GatewayResponse.fail(f"{type(e).__name__}: {e}")

        if response.success:
            self.migration_status = MigrationStatus.COMPLETED
            self.store.set_migration_flag('completed')
            logger.info("Migration to remote completed")
            return True

        self.migration_status = MigrationStatus.FAILED
        self.last_error = f"Migration failed: {response.error}"
        logger.error(self.last_error)
        return False

    async def _load_remote(self) -> bool:
        response = await self._call_remote(
            self.gateway.get_all_data(), self.config.LOAD_TIMEOUT, 'Data load'
        )
        if not response.success or not isinstance(response.data, dict):
            logger.warning(f"Remote data load failed: {response.error or 'malformed payload'}")
            return False
        self._adopt(migrate(response.data))
        return True

    def _load_local(self) -> None:
        self._adopt(self.store.load_snapshot() or Snapshot())

    def _adopt(self, snapshot: Snapshot) -> None:
        """Install a loaded snapshot. Loading is not a mutation."""
        self.change_count = max(self.change_count, snapshot.change_count)
        snapshot.change_count = self.change_count
        self.snapshot = snapshot
        self._last_backup_change = self.change_count

    # ==========================================================================
    # Mutations
    # ==========================================================================

    async def add(self, entity_type: str, data: Dict[str, Any]) -> MutationResult:
        return await self.mutate('add', entity_type, data=data)

    async def update(self, entity_type: str, record_id: Any, changes: Dict[str, Any]) -> MutationResult:
        return await self.mutate('update', entity_type, record_id=record_id, data=changes)

    async def delete(self, entity_type: str, record_id: Any) -> MutationResult:
        return await self.mutate('delete', entity_type, record_id=record_id)

    async def update_settings(self, changes: Dict[str, Any]) -> MutationResult:
        return await self.mutate('settings', data=changes)

    async def mutate(
        self,
        action: str,
        entity_type: Optional[str] = None,
        record_id: Any = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> MutationResult:
        """
        Single entry point for every snapshot mutation.

        Args:
            action: 'add', 'update', 'delete' or 'settings'
            entity_type: Registry name or collection name
            record_id: Target id for update/delete
            data: New record, partial update or settings changes

        Returns:
            MutationResult (errors are reported, not raised)
        """
        if self.is_busy:
            return MutationResult(False, error=BusyError("Migration in progress, try again when it completes"))

        backend = self.backend

        try:
            if action == 'settings':
                return await self._update_settings(backend, data or {})

            spec = get_entity_spec(entity_type) if entity_type else None
            if spec is None:
                raise UnknownEntityError(f"Unknown entity type: {entity_type}")

            if action == 'add':
                return await self._add(spec, backend, data or {})
            if action == 'update':
                return await self._update(spec, backend, record_id, data or {})
            if action == 'delete':
                return await self._delete(spec, backend, record_id)
        except PersistenceError as e:
            logger.warning(f"{action} {entity_type or 'settings'} rejected: {e}")
            return MutationResult(False, via=backend, error=e)

        raise ValueError(f"Unknown mutation action: {action}")

    def _check_duplicate_phone(self, broker: Dict[str, Any], exclude_id: Any = None) -> None:
        phone_key = normalize_phone(broker.get('phone'))
        if not phone_key:
            return
        for existing in self.snapshot.collection('brokers'):
            if exclude_id is not None and str(existing.get('id')) == str(exclude_id):
                continue
            if normalize_phone(existing.get('phone')) == phone_key:
                raise DuplicateRecordError(
                    f"A broker with phone {broker.get('phone')} already exists ({existing.get('name') or existing.get('id')})"
                )

    def _bump(self) -> None:
        self.change_count += 1
        self.snapshot.change_count = self.change_count
        self.snapshot.last_updated = utc_now()

    def _persist(self) -> Optional[PersistenceError]:
        result = self.store.save_snapshot(self.snapshot)
        if not result.success:
            logger.error(f"Local save failed, change kept in memory only: {result.error}")
            return result.error or PersistenceError("Local save failed")
        return None

    def _commit(self, backend: Backend, record: Optional[Dict[str, Any]]) -> MutationResult:
        """Count an applied change, persist locally if needed, run the backup policy."""
        self._bump()
        error = self._persist() if backend == Backend.LOCAL else None
        self._maybe_auto_backup()
        return MutationResult(
            success=error is None,
            via=backend,
            record=copy.deepcopy(record),
            changed=True,
            persisted=error is None,
            error=error,
        )

    def _replace_record(self, collection: str, old: Dict[str, Any], new: Dict[str, Any]) -> None:
        records = self.snapshot.collection(collection)
        for i, record in enumerate(records):
            if record is old:
                records[i] = new
                return

    async def _add(self, spec: EntitySpec, backend: Backend, data: Dict[str, Any]) -> MutationResult:
        record = filter_fields(spec, data)
        for key, value in spec.defaults.items():
            record.setdefault(key, copy.deepcopy(value))

        if spec.name == 'broker':
            self._check_duplicate_phone(record)

        if not record.get('id'):
            record['id'] = generate_id(spec.id_prefix)
        elif self.snapshot.find(spec.collection, record['id']) is not None:
            raise DuplicateRecordError(f"{spec.name} {record['id']} already exists")

        now = utc_now()
        record.setdefault('createdAt', now)
        record['updatedAt'] = now

        if backend == Backend.REMOTE:
            response = await self._call_remote(
                self.gateway.create(spec.name, record), self.config.API_TIMEOUT, f"Create {spec.name}"
            )
            if response.success:
                if isinstance(response.data, dict):
                    record = {**record, **response.data}
                self.snapshot.collection(spec.collection).append(record)
                logger.info(f"Created {spec.name} {record['id']} via remote")
                return self._commit(Backend.REMOTE, record)
            logger.warning(f"{self._remote_error(response, 'Create ' + spec.name)}, saving locally")

        self.snapshot.collection(spec.collection).append(record)
        logger.info(f"Created {spec.name} {record['id']} locally")
        return self._commit(Backend.LOCAL, record)

    async def _update(self, spec: EntitySpec, backend: Backend, record_id: Any, changes: Dict[str, Any]) -> MutationResult:
        existing = self.snapshot.find(spec.collection, record_id)
        if existing is None:
            raise RecordNotFoundError(f"{spec.name} {record_id} not found")

        merged = merge_record(spec, existing, changes)
        if merged == existing:
            logger.debug(f"Update of {spec.name} {record_id} changes nothing, skipped")
            return MutationResult(True, via=backend, record=copy.deepcopy(existing), changed=False)

        if spec.name == 'broker' and normalize_phone(merged.get('phone')) != normalize_phone(existing.get('phone')):
            self._check_duplicate_phone(merged, exclude_id=existing.get('id'))

        merged['updatedAt'] = utc_now()

        if backend == Backend.REMOTE:
            delta = {k: merged[k] for k in changes if k in spec.fields and k != 'id'}
            delta['updatedAt'] = merged['updatedAt']
            response = await self._call_remote(
                self.gateway.update(spec.name, str(existing['id']), delta),
                self.config.API_TIMEOUT,
                f"Update {spec.name}",
            )
            if response.success:
                if isinstance(response.data, dict):
                    merged = {**merged, **response.data, 'id': existing['id']}
                self._replace_record(spec.collection, existing, merged)
                return self._commit(Backend.REMOTE, merged)
            logger.warning(f"{self._remote_error(response, 'Update ' + spec.name)}, saving locally")

        self._replace_record(spec.collection, existing, merged)
        return self._commit(Backend.LOCAL, merged)

    async def _delete(self, spec: EntitySpec, backend: Backend, record_id: Any) -> MutationResult:
        existing = self.snapshot.find(spec.collection, record_id)
        if existing is None:
            raise RecordNotFoundError(f"{spec.name} {record_id} not found")

        via = Backend.LOCAL
        if backend == Backend.REMOTE:
            response = await self._call_remote(
                self.gateway.delete(spec.name, str(existing['id'])),
                self.config.API_TIMEOUT,
                f"Delete {spec.name}",
            )
            if response.success:
                via = Backend.REMOTE
            else:
                logger.warning(f"{self._remote_error(response, 'Delete ' + spec.name)}, deleting locally")

        records = self.snapshot.collection(spec.collection)
        self.snapshot.set_collection(spec.collection, [r for r in records if r is not existing])
        logger.info(f"Deleted {spec.name} {record_id} ({via.value})")
        return self._commit(via, existing)

    async def _update_settings(self, backend: Backend, changes: Dict[str, Any]) -> MutationResult:
        merged = {**copy.deepcopy(self.snapshot.settings), **copy.deepcopy(changes)}
        if merged == self.snapshot.settings:
            return MutationResult(True, via=backend, record=copy.deepcopy(merged), changed=False)

        if backend == Backend.REMOTE:
            response = await self._call_remote(
                self.gateway.update_settings(merged), self.config.API_TIMEOUT, 'Update settings'
            )
            if response.success:
                if isinstance(response.data, dict):
                    merged = {**merged, **response.data}
                self.snapshot.settings = merged
                return self._commit(Backend.REMOTE, merged)
            logger.warning(f"{self._remote_error(response, 'Update settings')}, saving locally")

        self.snapshot.settings = merged
        return self._commit(Backend.LOCAL, merged)

    # ==========================================================================
    # Backups
    # ==========================================================================

    def _maybe_auto_backup(self) -> Optional[BackupRecord]:
        threshold = self.config.AUTO_BACKUP_CHANGE_THRESHOLD
        if threshold <= 0 or self.changes_since_backup < threshold:
            return None
        return self.create_auto_backup()

    def create_auto_backup(self) -> Optional[BackupRecord]:
        """Back up the in-memory snapshot. Failures are logged, not raised."""
        try:
            record = self.store.create_backup(self.snapshot, BackupType.AUTO)
        except PersistenceError as e:
            logger.warning(f"Auto-backup failed: {e}")
            return None
        self._last_backup_change = self.change_count
        self._auto_backups += 1
        return record

    def create_manual_backup(self) -> OperationResult:
        try:
            record = self.store.create_backup(self.snapshot, BackupType.MANUAL)
        except PersistenceError as e:
            logger.error(f"Manual backup failed: {e}")
            return OperationResult(False, error=e)
        self._last_backup_change = self.change_count
        return OperationResult(True, data=record, via=Backend.LOCAL)

    def list_backups(self) -> OperationResult:
        try:
            backups = self.store.list_backups()
        except PersistenceError as e:
            logger.error(f"Listing backups failed: {e}")
            return OperationResult(False, error=e)
        return OperationResult(True, data=backups, via=Backend.LOCAL)

    def delete_backup(self, key: str) -> OperationResult:
        try:
            deleted = self.store.delete_backup(key)
        except PersistenceError as e:
            logger.error(f"Deleting backup {key} failed: {e}")
            return OperationResult(False, error=e)
        if not deleted:
            return OperationResult(False, error=PersistenceError(f"Backup not found: {key}"))
        logger.info(f"Deleted backup {key}")
        return OperationResult(True, data=key, via=Backend.LOCAL)

    def cleanup_old_backups(self, keep: int = 5) -> OperationResult:
        try:
            deleted = self.store.prune_backups(keep)
        except PersistenceError as e:
            logger.error(f"Backup cleanup failed: {e}")
            return OperationResult(False, error=e)
        return OperationResult(True, data=deleted, via=Backend.LOCAL)

    async def _replace_snapshot(self, snapshot: Snapshot, label: str) -> OperationResult:
        """Install a whole snapshot as an effective mutation on the current backend."""
        backend = self.backend
        if backend == Backend.REMOTE:
            response = await self._call_remote(
                self.gateway.import_backup(snapshot.to_dict()), self.config.MIGRATION_TIMEOUT, label
            )
            if response.success:
                self.snapshot = snapshot
                self._bump()
                return OperationResult(True, data=snapshot.record_counts(), via=Backend.REMOTE)
            logger.warning(f"{self._remote_error(response, label)}, applying locally")

        self.snapshot = snapshot
        self._bump()
        error = self._persist()
        return OperationResult(error is None, data=snapshot.record_counts(), via=Backend.LOCAL, error=error)

    async def restore_backup(self, key: str) -> OperationResult:
        """Restore a backup after taking a safety backup of the current data."""
        if self.is_busy:
            return OperationResult(False, error=BusyError("Migration in progress"))

        try:
            restored = self.store.restore_backup(key)
            safety = self.store.create_backup(self.snapshot, BackupType.MANUAL)
        except PersistenceError as e:
            logger.error(f"Restore of {key} aborted: {e}")
            return OperationResult(False, error=e)

        logger.info(f"Safety backup {safety.key} created before restoring {key}")
        result = await self._replace_snapshot(restored, f"Restore {key}")
        self._last_backup_change = self.change_count
        return result

    # ==========================================================================
    # Import / export / maintenance
    # ==========================================================================

    async def export_data(self) -> OperationResult:
        """Framed export of the canonical dataset."""
        if self.backend == Backend.REMOTE:
            response = await self._call_remote(
                self.gateway.export_backup(), self.config.LOAD_TIMEOUT, 'Export'
            )
            if response.success and isinstance(response.data, dict):
                payload = self.store.export_framed(migrate(response.data))
                return OperationResult(True, data=payload, via=Backend.REMOTE)
            logger.warning(f"Remote export failed ({response.error}), exporting in-memory snapshot")

        return OperationResult(True, data=self.store.export_framed(self.snapshot), via=Backend.LOCAL)

    async def import_backup(self, raw: Any) -> OperationResult:
        """
        Validate and import a backup/export payload (dict or JSON text).

        Invalid payloads abort with ImportValidationError listing every
        problem. Warnings are passed through on success.
        """
        if self.is_busy:
            return OperationResult(False, error=BusyError("Migration in progress"))

        validation, snapshot = self.store.prepare_import(raw)
        if snapshot is None:
            error = ImportValidationError("Import validation failed", validation.errors)
            logger.warning(f"Import rejected: {error}")
            return OperationResult(False, data=validation.to_dict(), error=error, warnings=validation.warnings)

        for warning in validation.warnings:
            logger.warning(f"Import warning: {warning}")

        try:
            self.store.create_backup(self.snapshot, BackupType.MANUAL)
        except PersistenceError as e:
            logger.warning(f"Pre-import backup failed: {e}")

        result = await self._replace_snapshot(snapshot, 'Import')
        result.warnings = list(validation.warnings)
        if result.success:
            logger.info(f"Imported {sum(result.data.values())} records ({result.via.value})")
        return result

    async def clear_all_data(self) -> OperationResult:
        """Delete every record after backing up the current snapshot."""
        if self.is_busy:
            return OperationResult(False, error=BusyError("Migration in progress"))

        backend = self.backend
        try:
            if backend == Backend.REMOTE:
                backup = self.store.create_backup(self.snapshot, BackupType.MANUAL)
                response = await self._call_remote(
                    self.gateway.clear_all_data(), self.config.API_TIMEOUT, 'Clear data'
                )
                if not response.success:
                    return OperationResult(False, via=backend, error=self._remote_error(response, 'Clear data'))
            else:
                backup = self.store.clear_local_data()
        except PersistenceError as e:
            logger.error(f"Clear aborted: {e}")
            return OperationResult(False, via=backend, error=e)

        cleared = Snapshot()
        cleared.settings = copy.deepcopy(self.snapshot.settings)
        self.snapshot = cleared
        self._bump()
        error = self._persist() if backend == Backend.LOCAL else None
        logger.info(f"All data cleared ({backend.value})")
        return OperationResult(error is None, data=backup.key if backup else None, via=backend, error=error)

    async def trigger_migration(self) -> OperationResult:
        """Manually push local data to the remote service, ignoring the flag."""
        if self.is_busy:
            return OperationResult(False, error=BusyError("Migration already in progress"))

        if not await self._probe():
            self.remote_available = False
            return OperationResult(False, error=RemoteUnavailableError("Remote data service is not available"))
        self.remote_available = True

        raw = self.store.load_raw_data()
        if raw is None:
            return OperationResult(False, error=PersistenceError("No local data to migrate"))

        legacy = migrate(raw)
        if not await self._run_migration(legacy):
            return OperationResult(False, error=MigrationFailureError(self.last_error or "Migration failed"))

        if await self._load_remote():
            self.change_count += 1
            self.snapshot.change_count = self.change_count
        return OperationResult(True, data=legacy.record_counts(), via=Backend.REMOTE)

    def verify_broker_data(self) -> OperationResult:
        """Consistency report for brokers in the in-memory snapshot."""
        report = verify_broker_data(self.snapshot)
        return OperationResult(True, data=report, via=self.backend)

    async def clean_up_broker_data(self) -> OperationResult:
        """
        Move contacts still typed 'broker' into brokers and repair their
        references. A backup of the current snapshot is taken first; nothing
        is written when there is nothing to repair.
        """
        if self.is_busy:
            return OperationResult(False, error=BusyError("Migration in progress"))

        cleaned, context = clean_up_broker_data(self.snapshot)
        if cleaned.data_equals(self.snapshot):
            logger.info("Broker cleanup: nothing to repair")
            return OperationResult(True, data=verify_broker_data(self.snapshot), via=self.backend)

        try:
            backup = self.store.create_backup(self.snapshot, BackupType.MANUAL)
        except PersistenceError as e:
            logger.error(f"Broker cleanup aborted, backup failed: {e}")
            return OperationResult(False, error=e)
        logger.info(f"Backup {backup.key} created before broker cleanup")

        result = await self._replace_snapshot(cleaned, 'Broker cleanup')
        result.data = verify_broker_data(self.snapshot)
        logger.info(
            f"Broker cleanup applied ({result.via.value}): {context.brokers_created} brokers created, "
            f"{context.references_remapped} references remapped"
        )
        return result

    async def refresh(self) -> OperationResult:
        """Re-probe the remote service and reload the snapshot."""
        if self.is_busy:
            return OperationResult(False, error=BusyError("Migration in progress"))

        self.remote_available = await self._probe()
        if self.remote_available and await self._load_remote():
            return OperationResult(True, data=self.snapshot.record_counts(), via=Backend.REMOTE)

        self.remote_available = False
        self._load_local()
        return OperationResult(True, data=self.snapshot.record_counts(), via=Backend.LOCAL)

    # ==========================================================================
    # Read access
    # ==========================================================================

    def get_record(self, entity_type: str, record_id: Any) -> Optional[Dict[str, Any]]:
        spec = get_entity_spec(entity_type)
        if spec is None:
            return None
        record = self.snapshot.find(spec.collection, record_id)
        return copy.deepcopy(record) if record is not None else None

    def get_collection(self, entity_type: str) -> List[Dict[str, Any]]:
        spec = get_entity_spec(entity_type)
        if spec is None:
            return []
        return copy.deepcopy(self.snapshot.collection(spec.collection))

    def get_snapshot(self) -> Snapshot:
        return self.snapshot.clone()

    def get_storage_info(self) -> Dict[str, Any]:
        info = self.store.get_storage_info()
        info['backend'] = self.backend.value
        info['changeCount'] = self.change_count
        return info

    def get_status(self) -> Dict[str, Any]:
        """Get orchestrator status."""
        return {
            'backend': self.backend.value,
            'remote_available': self.remote_available,
            'migration_status': self.migration_status.value,
            'change_count': self.change_count,
            'changes_since_backup': self.changes_since_backup,
            'auto_backups': self._auto_backups,
            'last_error': self.last_error,
        }

    async def close(self) -> None:
        if self.gateway is not None:
            await self.gateway.close()
