"""
Sitara CRM Remote Gateway Interface

This module defines the abstract interface every remote data service client
must implement. The orchestrator only talks to this contract, so the HTTP
client can be swapped (or faked in tests) without changing core logic.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


# ============================================
# DATA CLASSES
# ============================================

@dataclass
class GatewayResponse:
    """Outcome of one remote call"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    timed_out: bool = False

    @classmethod
    def ok(cls, data: Any = None) -> 'GatewayResponse':
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, timed_out: bool = False) -> 'GatewayResponse':
        return cls(success=False, error=error, timed_out=timed_out)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'data': self.data,
            'error': self.error,
        }


# ============================================
# ADAPTER INTERFACE
# ============================================

class RemoteDataGateway(ABC):
    """
    Abstract interface for the remote data service.

    Implementations never raise for transport failures: every call resolves
    to a GatewayResponse. Entity types are registry names ('customer',
    'broker', 'companyRep', ...).
    """

    @abstractmethod
    async def health_check(self) -> GatewayResponse:
        """
        Probe the service.

        Returns:
            Successful response if the service answered healthy
        """
        pass

    @abstractmethod
    async def get_all_data(self) -> GatewayResponse:
        """
        Fetch the canonical snapshot.

        Returns:
            Response whose data is a snapshot-shaped dict
        """
        pass

    @abstractmethod
    async def create(self, entity_type: str, record: Dict[str, Any]) -> GatewayResponse:
        """
        Create a record.

        Returns:
            Response whose data is the canonical stored record
        """
        pass

    @abstractmethod
    async def update(self, entity_type: str, record_id: str, changes: Dict[str, Any]) -> GatewayResponse:
        """
        Apply a partial update.

        Returns:
            Response whose data is the canonical updated record
        """
        pass

    @abstractmethod
    async def delete(self, entity_type: str, record_id: str) -> GatewayResponse:
        """Delete a record."""
        pass

    @abstractmethod
    async def update_settings(self, settings: Dict[str, Any]) -> GatewayResponse:
        """Replace the settings record."""
        pass

    @abstractmethod
    async def export_backup(self) -> GatewayResponse:
        """Export the full remote dataset."""
        pass

    @abstractmethod
    async def import_backup(self, snapshot: Dict[str, Any]) -> GatewayResponse:
        """
        Bulk-load a snapshot into the service (used by migration and import).

        Args:
            snapshot: Current-version snapshot dict
        """
        pass

    @abstractmethod
    async def clear_all_data(self) -> GatewayResponse:
        """Delete every record on the service."""
        pass

    async def close(self) -> None:
        """Clean up connection resources."""
        return None
