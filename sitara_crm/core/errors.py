"""
Persistence error taxonomy.

Store-level operations raise these; the orchestrator catches them and
reports them inside result objects.
"""

from typing import List, Optional


class PersistenceError(Exception):
    """Base class for every persistence failure."""
    code = 'persistence_error'

    def __init__(self, message: str = ''):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code)

    def to_dict(self) -> dict:
        return {'code': self.code, 'message': self.message}


class RemoteUnavailableError(PersistenceError):
    """Remote data service is not reachable."""
    code = 'unavailable'


class RemoteTimeoutError(RemoteUnavailableError):
    """Remote call exceeded its deadline."""
    code = 'timeout'

    def __init__(self, message: str = '', timeout: Optional[float] = None):
        super().__init__(message)
        self.timeout = timeout


class StorageError(PersistenceError):
    """Local store could not be read or written."""
    code = 'storage_error'


class QuotaExceededError(PersistenceError):
    """Local store is full even after pruning old backups."""
    code = 'quota_exceeded'


class ImportValidationError(PersistenceError):
    """Import payload is structurally invalid."""
    code = 'validation_error'

    def __init__(self, message: str = '', errors: Optional[List[str]] = None):
        super().__init__(message or '; '.join(errors or []))
        self.errors = list(errors or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['errors'] = list(self.errors)
        return data


class BackupNotFoundError(PersistenceError):
    """Requested backup payload does not exist in the local store."""
    code = 'not_found'

    def __init__(self, key: str):
        super().__init__(f"Backup not found: {key}")
        self.key = key


class RecordNotFoundError(PersistenceError):
    """Record id does not exist in the snapshot."""
    code = 'record_not_found'


class DuplicateRecordError(PersistenceError):
    """A record with the same identifying data already exists."""
    code = 'duplicate'


class UnknownEntityError(PersistenceError):
    """Entity type is not part of the schema."""
    code = 'unknown_entity'


class MigrationFailureError(PersistenceError):
    """Legacy data could not be migrated to the remote service."""
    code = 'migration_failed'


class BusyError(PersistenceError):
    """Mutations are rejected while a migration is running."""
    code = 'busy'
