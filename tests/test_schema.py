"""Tests for the snapshot schema and entity registry."""

from sitara_crm.core.schema import (
    COLLECTIONS,
    CURRENT_VERSION,
    BackupRecord,
    BackupType,
    Snapshot,
    filter_fields,
    generate_id,
    get_entity_spec,
    merge_record,
    parse_version,
    strip_export_metadata,
)


class TestEntityRegistry:
    def test_lookup_by_type_and_collection(self):
        assert get_entity_spec('companyRep').collection == 'companyReps'
        assert get_entity_spec('companyReps').name == 'companyRep'
        assert get_entity_spec('inventory').name == 'inventoryItem'
        assert get_entity_spec('nope') is None

    def test_every_collection_has_an_entity(self):
        for name in COLLECTIONS:
            assert get_entity_spec(name) is not None

    def test_generate_id_uses_prefix(self):
        first = generate_id('cust')
        second = generate_id('cust')
        assert first.startswith('cust_')
        assert first != second


class TestMergeRecord:
    def test_unknown_fields_ignored(self):
        spec = get_entity_spec('broker')
        existing = {'id': 'broker_1', 'name': 'Old', 'legacyFlag': True}
        merged = merge_record(spec, existing, {'name': 'New', 'bogus': 1})

        assert merged['name'] == 'New'
        assert 'bogus' not in merged
        # Opaque data already on the record survives
        assert merged['legacyFlag'] is True
        assert existing['name'] == 'Old'

    def test_id_cannot_change(self):
        spec = get_entity_spec('customer')
        merged = merge_record(spec, {'id': 'cust_1'}, {'id': 'cust_2', 'name': 'X'})
        assert merged['id'] == 'cust_1'

    def test_filter_fields(self):
        spec = get_entity_spec('project')
        assert filter_fields(spec, {'name': 'P', 'color': 'red'}) == {'name': 'P'}


class TestStripExportMetadata:
    def test_removes_framing(self):
        payload = {
            'version': '4.0',
            'customers': [],
            'exportInfo': {'source': 'Sitara CRM'},
            'exportDate': '2024-01-01',
            'backupType': 'auto',
        }
        stripped = strip_export_metadata(payload)
        assert stripped == {'version': '4.0', 'customers': []}
        assert 'exportInfo' in payload

    def test_unwraps_state_container(self):
        payload = {'state': {'version': '3.1', 'customers': [{'id': 'c'}]}, 'version': 0}
        assert strip_export_metadata(payload) == {'version': '3.1', 'customers': [{'id': 'c'}]}

    def test_non_dict_passthrough(self):
        assert strip_export_metadata([1, 2]) == [1, 2]


def test_parse_version():
    assert parse_version('4.0') == (4, 0)
    assert parse_version('3.2.1') == (3, 2, 1)
    assert parse_version('four') is None
    assert parse_version(4.0) is None


class TestSnapshot:
    def test_from_dict_defaults_and_drops_non_objects(self):
        snapshot = Snapshot.from_dict({
            'version': CURRENT_VERSION,
            'customers': [{'id': 'c1'}, 'junk', None],
            'brokers': 'not a list',
            'settings': {'currency': 'USD'},
            'changeCount': 'seven',
        })
        assert snapshot.collection('customers') == [{'id': 'c1'}]
        assert snapshot.collection('brokers') == []
        assert snapshot.settings['currency'] == 'USD'
        assert snapshot.settings['followUpDays'] == [1, 3, 7, 14, 30]
        assert snapshot.change_count == 0

    def test_to_dict_has_every_collection(self):
        data = Snapshot().to_dict()
        for name in COLLECTIONS:
            assert data[name] == []
        assert data['version'] == CURRENT_VERSION
        assert data['changeCount'] == 0

    def test_find_compares_ids_as_strings(self):
        snapshot = Snapshot.from_dict({'projects': [{'id': 7, 'name': 'P'}]})
        assert snapshot.find('projects', '7')['name'] == 'P'

    def test_data_equals_ignores_counters(self):
        a = Snapshot.from_dict({'customers': [{'id': 'c1'}], 'changeCount': 1, 'lastUpdated': 'x'})
        b = a.clone()
        b.change_count = 9
        b.last_updated = 'y'
        assert a.data_equals(b)
        b.collection('customers').append({'id': 'c2'})
        assert not a.data_equals(b)


def test_backup_record_tolerates_unknown_type():
    record = BackupRecord.from_dict({'key': 'k', 'type': 'weird', 'size': '12'})
    assert record.type == BackupType.MANUAL
    assert record.size == 12
    assert record.to_dict()['type'] == 'manual'
