"""
Sitara CRM Adapters Package

Clients for the remote CRM data service:
- RemoteDataGateway contract
- HTTP implementation (CRMApiClient)
"""

from sitara_crm.adapters.base_adapter import GatewayResponse, RemoteDataGateway
from sitara_crm.adapters.crm_api import CRMApiClient

__all__ = [
    "GatewayResponse",
    "RemoteDataGateway",
    "CRMApiClient",
]
