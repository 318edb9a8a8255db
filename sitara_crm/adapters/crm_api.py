"""
Sitara CRM data service client.

Async HTTP implementation of the RemoteDataGateway against the CRM backend:
per-entity REST endpoints, bulk migration/backup endpoints and a health probe.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.schema import get_entity_spec
from .base_adapter import GatewayResponse, RemoteDataGateway

logger = logging.getLogger(__name__)

DEFAULT_API_URL = 'http://localhost:5000/api'


class CRMApiClient(RemoteDataGateway):
    """CRM backend API client."""

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        migration_timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.migration_timeout = migration_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def root_url(self) -> str:
        """Service root (the health endpoint lives outside /api)."""
        if self.base_url.endswith('/api'):
            return self.base_url[:-len('/api')]
        return self.base_url

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    'Content-Type': 'application/json',
                    'Accept': 'application/json',
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Any] = None,
        timeout: Optional[float] = None,
        url: Optional[str] = None,
    ) -> GatewayResponse:
        """Make a request and unwrap the {success, data} envelope."""
        url = url or f"{self.base_url}/{endpoint.lstrip('/')}"
        client = self._get_client()

        logger.debug(f"API request: {method} {url}")
        try:
            response = await client.request(
                method,
                url,
                json=json_data,
                timeout=timeout or self.timeout,
            )
        except httpx.TimeoutException:
            logger.warning(f"API timeout [{method} {url}]")
            return GatewayResponse.fail('Request timeout - the server took too long to respond', timed_out=True)
        except httpx.HTTPError as e:
            logger.warning(f"API unreachable [{method} {url}]: {e}")
            return GatewayResponse.fail(str(e) or 'Network error')

        # Check rate limits
        remaining = response.headers.get('X-RateLimit-Remaining')
        if remaining and remaining.isdigit() and int(remaining) < 10:
            logger.warning(f"CRM API rate limit low: {remaining} remaining")

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            error = body.get('error') if isinstance(body, dict) else None
            logger.error(f"API error [{method} {url}]: {error or response.status_code}")
            return GatewayResponse.fail(error or f"HTTP {response.status_code}")

        if isinstance(body, dict):
            if body.get('success') is False:
                return GatewayResponse.fail(body.get('error') or 'Request failed')
            if 'data' in body:
                return GatewayResponse.ok(body['data'])
        return GatewayResponse.ok(body)

    def _endpoint(self, entity_type: str) -> Optional[str]:
        spec = get_entity_spec(entity_type)
        return spec.endpoint if spec else None

    # ==========================================================================
    # Health / bulk
    # ==========================================================================

    async def health_check(self) -> GatewayResponse:
        return await self._request('GET', 'health', url=f"{self.root_url}/health")

    async def get_all_data(self) -> GatewayResponse:
        return await self._request('GET', 'migration/all')

    async def export_backup(self) -> GatewayResponse:
        return await self._request('GET', 'backup/export')

    async def import_backup(self, snapshot: Dict[str, Any]) -> GatewayResponse:
        response = await self._request(
            'POST', 'backup/import', json_data=snapshot, timeout=self.migration_timeout
        )
        if response.success:
            logger.info("Snapshot imported into CRM backend")
        return response

    async def clear_all_data(self) -> GatewayResponse:
        return await self._request('DELETE', 'backup/clear')

    # ==========================================================================
    # Entities
    # ==========================================================================

    async def create(self, entity_type: str, record: Dict[str, Any]) -> GatewayResponse:
        endpoint = self._endpoint(entity_type)
        if not endpoint:
            return GatewayResponse.fail(f"Unknown entity type: {entity_type}")
        return await self._request('POST', endpoint, json_data=record)

    async def update(self, entity_type: str, record_id: str, changes: Dict[str, Any]) -> GatewayResponse:
        endpoint = self._endpoint(entity_type)
        if not endpoint:
            return GatewayResponse.fail(f"Unknown entity type: {entity_type}")
        return await self._request('PUT', f"{endpoint}/{record_id}", json_data=changes)

    async def delete(self, entity_type: str, record_id: str) -> GatewayResponse:
        endpoint = self._endpoint(entity_type)
        if not endpoint:
            return GatewayResponse.fail(f"Unknown entity type: {entity_type}")
        return await self._request('DELETE', f"{endpoint}/{record_id}")

    async def update_settings(self, settings: Dict[str, Any]) -> GatewayResponse:
        return await self._request('PUT', 'settings', json_data=settings)
