"""
pytest configuration and fixtures for Sitara CRM persistence tests.
"""
import asyncio
import copy
import sys
from pathlib import Path

import pytest

# Add project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from sitara_crm.adapters.base_adapter import GatewayResponse, RemoteDataGateway
from sitara_crm.core.local_store import KeyValueStore, LocalStoreManager
from sitara_crm.core.orchestrator import PersistenceOrchestrator
from sitara_crm.core.schema import Snapshot, get_entity_spec
from sitara_crm.utils.config import PersistenceConfig


class FakeGateway(RemoteDataGateway):
    """In-memory remote data service with switchable failures and delays."""

    def __init__(self, available=True, data=None):
        self.available = available
        self.data = data if data is not None else Snapshot().to_dict()
        self.fail = set()
        self.delay = {}
        self.calls = []
        self.imported = []

    async def _respond(self, name, produce):
        self.calls.append(name)
        if name in self.delay:
            await asyncio.sleep(self.delay[name])
        if not self.available or name in self.fail:
            return GatewayResponse.fail(f"{name} failed")
        return GatewayResponse.ok(produce())

    async def health_check(self):
        return await self._respond('health_check', lambda: {'status': 'ok'})

    async def get_all_data(self):
        return await self._respond('get_all_data', lambda: copy.deepcopy(self.data))

    async def create(self, entity_type, record):
        def produce():
            stored = dict(copy.deepcopy(record), syncedBy='server')
            self.data.setdefault(get_entity_spec(entity_type).collection, []).append(stored)
            return copy.deepcopy(stored)
        return await self._respond('create', produce)

    async def update(self, entity_type, record_id, changes):
        def produce():
            for record in self.data.get(get_entity_spec(entity_type).collection, []):
                if str(record.get('id')) == str(record_id):
                    record.update(copy.deepcopy(changes))
                    return copy.deepcopy(record)
            return dict(copy.deepcopy(changes), id=record_id)
        return await self._respond('update', produce)

    async def delete(self, entity_type, record_id):
        def produce():
            collection = get_entity_spec(entity_type).collection
            self.data[collection] = [
                r for r in self.data.get(collection, []) if str(r.get('id')) != str(record_id)
            ]
            return {'id': record_id}
        return await self._respond('delete', produce)

    async def update_settings(self, settings):
        def produce():
            self.data['settings'] = copy.deepcopy(settings)
            return copy.deepcopy(settings)
        return await self._respond('update_settings', produce)

    async def export_backup(self):
        return await self._respond('export_backup', lambda: copy.deepcopy(self.data))

    async def import_backup(self, snapshot):
        def produce():
            self.imported.append(copy.deepcopy(snapshot))
            self.data = copy.deepcopy(snapshot)
            return {'imported': True}
        return await self._respond('import_backup', produce)

    async def clear_all_data(self):
        def produce():
            self.data = Snapshot().to_dict()
            return {'cleared': True}
        return await self._respond('clear_all_data', produce)


@pytest.fixture
def project_root():
    """Return the project root path."""
    return PROJECT_ROOT


@pytest.fixture
def test_db_path(tmp_path):
    """Temporary local store database path."""
    return tmp_path / "test_sitara.db"


@pytest.fixture
def kv_store(test_db_path):
    return KeyValueStore(test_db_path)


@pytest.fixture
def store(kv_store):
    """Local store manager on a temporary database."""
    return LocalStoreManager(kv_store)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def offline_gateway():
    return FakeGateway(available=False)


@pytest.fixture
def make_orchestrator(store):
    """Build an orchestrator with config overrides."""
    def _make(gateway=None, confirm_migration=None, **overrides):
        config = PersistenceConfig(**overrides)
        return PersistenceOrchestrator(
            store, gateway=gateway, config=config, confirm_migration=confirm_migration
        )
    return _make


@pytest.fixture
def legacy_snapshot():
    """A 3.2 snapshot with brokers still mixed into customers."""
    return {
        "version": "3.2",
        "customers": [
            {"id": "cust_1", "name": "Ali Khan", "phone": "0300-1234567", "type": "customer"},
            {"id": "cust_2", "name": "Bilal Ahmed", "phone": "0321-7654321", "type": "broker",
             "commissionRate": 2.5},
            {"id": "cust_3", "name": "Sana Malik", "phone": "0333-1112223", "type": "both"},
        ],
        "projects": [
            {"id": "proj_1", "customerId": "cust_1", "brokerId": "cust_2",
             "brokerCommissionRate": 2.5, "name": "Sitara Heights", "sale": 5000000},
        ],
        "receipts": [
            {"id": "rcpt_1", "customerId": "cust_1", "projectId": "proj_1", "amount": 250000},
        ],
        "interactions": [
            {"id": "int_1", "customerId": "cust_2", "contactType": "broker", "notes": "Site visit"},
            {"id": "int_2", "customerId": "cust_1", "contactType": "customer", "notes": "Follow up"},
        ],
        "commissionPayments": [
            {"id": "cpay_1", "projectId": "proj_1", "recipientId": "cust_2",
             "recipientType": "broker", "amount": 50000},
        ],
        "settings": {"currency": "PKR", "defaultBrokerCommission": 2.5},
    }


@pytest.fixture
def both_snapshot():
    """A 3.2 snapshot with a single contact that is both customer and broker."""
    return {
        "version": "3.2",
        "customers": [
            {"id": "cust_9", "name": "Zara Hussain", "phone": "0345-9998887", "type": "both"},
        ],
        "projects": [],
        "settings": {"currency": "PKR"},
    }


@pytest.fixture
def sample_customer():
    """Sample customer data for testing."""
    return {
        "name": "Ahmed Raza",
        "phone": "0300-5550001",
        "cnic": "35202-1234567-1",
        "email": "ahmed@example.com",
        "address": "DHA Phase 5, Lahore",
    }


@pytest.fixture
def sample_broker():
    """Sample broker data for testing."""
    return {
        "name": "Kamran Estate",
        "phone": "0301-4443332",
        "cnic": "35202-7654321-3",
        "commissionRate": 1,
    }


@pytest.fixture
def env_vars(monkeypatch, tmp_path):
    """Set up test environment variables."""
    monkeypatch.setenv("SITARA_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("SITARA_API_URL", "http://crm.test/api")
    monkeypatch.setenv("SITARA_LOG_LEVEL", "DEBUG")
