import io

import openpyxl
import pytest

from services.exceptions import StorageError
from tests.test_helpers import create_demand_workbook, create_mock_excel


class TestSessionRoutes:
    """Class-based tests for the session blueprint."""

    @pytest.fixture(autouse=True)
    def setup(self, client, sample_records):
        """Set up the test client with an uploaded demand workbook."""
        self.client = client
        response = self.client.post(
            '/api/session/upload',
            data={'file': (create_demand_workbook(sample_records), 'demand.xlsx'), 'user': 'alice'},
            content_type='multipart/form-data',
        )
        assert response.status_code == 200

    def test_join(self):
        response = self.client.post('/api/session/join', json={'user': 'bob'})
        assert response.status_code == 200
        assert response.get_json()['sessionId'] == 'shared'

    def test_data_lists_multi_variant_dfus_by_default(self):
        body = self.client.get('/api/session/data').get_json()
        assert list(body['aggregates']) == ['D100']
        assert body['dataUploaded'] is True

        body = self.client.get('/api/session/data?all=1').get_json()
        assert set(body['aggregates']) == {'D100', 'D200'}

    def test_data_filters_and_search(self):
        body = self.client.get('/api/session/data?all=1&plant=P2').get_json()
        assert list(body['aggregates']) == ['D200']

        body = self.client.get('/api/session/data?all=1&search=d10').get_json()
        assert list(body['aggregates']) == ['D100']

    def test_transfer_and_undo(self):
        response = self.client.post(
            '/api/session/dfu/D100/transfer',
            json={'user': 'bob', 'selection': {'type': 'bulk', 'targetVariant': 'B'}},
        )
        assert response.status_code == 200
        body = response.get_json()
        assert body['success'] is True
        assert body['summary']['message'] == '1 variants transferred to B'
        assert body['updatedAggregates']['D100']['variants'] == ['B']

        response = self.client.post('/api/session/dfu/D100/undo', json={'user': 'bob'})
        assert response.status_code == 200
        assert response.get_json()['updatedAggregates']['D100']['variants'] == ['A', 'B']

    def test_pending_selection_flow(self):
        response = self.client.put(
            '/api/session/dfu/D100/selection',
            json={'selection': {'type': 'individual', 'transfers': {'A': 'B'}}},
        )
        assert response.status_code == 200
        pending = self.client.get('/api/session/data').get_json()['pendingSelections']
        assert pending == {'D100': {'type': 'individual', 'transfers': {'A': 'B'}}}

        response = self.client.delete('/api/session/dfu/D100/selection')
        assert response.status_code == 200

        response = self.client.post('/api/session/dfu/D100/transfer', json={})
        assert response.status_code == 400
        assert response.get_json()['operation'] == 'transfer'

    def test_patch_selection_toggles_week(self):
        response = self.client.patch(
            '/api/session/dfu/D100/selection',
            json={'type': 'granular', 'source': 'A', 'target': 'B', 'weekKey': '3-PlantX', 'customQuantity': 5},
        )
        assert response.status_code == 200

        response = self.client.post('/api/session/dfu/D100/transfer', json={'user': 'bob'})
        assert response.status_code == 200
        variant_demand = response.get_json()['updatedAggregates']['D100']['variantDemand']
        assert variant_demand['A']['weeklyRecords']['3-PlantX']['demand'] == 15

    def test_patch_selection_edits_week_quantity(self):
        week = {'type': 'granular', 'source': 'A', 'target': 'B', 'weekKey': '3-PlantX'}
        self.client.patch('/api/session/dfu/D100/selection', json=week)
        response = self.client.patch('/api/session/dfu/D100/selection', json=dict(week, customQuantity=5))
        assert response.status_code == 200

        pending = self.client.get('/api/session/data').get_json()['pendingSelections']['D100']
        assert pending['granularTransfers']['A']['B']['3-PlantX'] == {'selected': True, 'customQuantity': 5.0}

        response = self.client.patch(
            '/api/session/dfu/D100/selection', json=dict(week, type='granular_quantity', customQuantity=2)
        )
        assert response.status_code == 200
        pending = self.client.get('/api/session/data').get_json()['pendingSelections']['D100']
        assert pending['granularTransfers']['A']['B']['3-PlantX']['customQuantity'] == 2.0

        response = self.client.patch(
            '/api/session/dfu/D100/selection',
            json=dict(week, type='granular_quantity', weekKey='4-PlantX', customQuantity=2),
        )
        assert response.status_code == 400

    def test_non_object_json_body_is_a_bad_request(self):
        response = self.client.post('/api/session/dfu/D100/transfer', json=[1, 2])
        assert response.status_code == 400
        assert response.get_json()['success'] is False

        response = self.client.patch('/api/session/dfu/D100/selection', json=['A'])
        assert response.status_code == 400

        response = self.client.post('/api/session/dfu/D100/variants', json='NEW')
        assert response.status_code == 400

    def test_unknown_dataset_is_rejected(self):
        file = create_mock_excel({'Sheet1': [['Product Number', 'Stock On Hand'], ['A', 9]]})
        response = self.client.post(
            '/api/session/upload/bogus',
            data={'file': (file, 'bogus.xlsx')},
            content_type='multipart/form-data',
        )
        assert response.status_code == 400
        assert 'Unknown dataset' in response.get_json()['error']

    def test_error_status_codes(self):
        response = self.client.post(
            '/api/session/dfu/NOPE/transfer', json={'selection': {'type': 'bulk', 'targetVariant': 'B'}}
        )
        assert response.status_code == 404
        assert response.get_json() == {
            'success': False, 'error': 'DFU NOPE not found', 'dfuCode': 'NOPE', 'operation': 'transfer',
        }

        response = self.client.post('/api/session/dfu/D100/undo', json={})
        assert response.status_code == 404

        response = self.client.post('/api/session/dfu/D100/variants', json={'variant': 'A'})
        assert response.status_code == 400

    def test_storage_error_is_503(self, app_context, mocker):
        service = app_context.extensions['transfer_service']
        mocker.patch.object(service.store, 'save_dfu_change', side_effect=StorageError('locked', 'D100', 'transfer'))

        response = self.client.post(
            '/api/session/dfu/D100/transfer', json={'selection': {'type': 'bulk', 'targetVariant': 'B'}}
        )
        assert response.status_code == 503

    def test_add_variant(self):
        response = self.client.post('/api/session/dfu/D100/variants', json={'variant': 'NEW', 'user': 'bob'})
        assert response.status_code == 200
        assert response.get_json()['recordsAffected'] == 2

    def test_events_polling(self):
        first = self.client.get('/api/session/events?since=0').get_json()
        assert [e['operation'] for e in first['events']] == ['data_uploaded']

        self.client.post('/api/session/dfu/D100/variants', json={'variant': 'NEW', 'user': 'bob'})
        later = self.client.get(f"/api/session/events?since={first['lastEventId']}").get_json()
        assert [e['operation'] for e in later['events']] == ['variant_added']
        assert later['events'][0]['user'] == 'bob'

        assert self.client.get('/api/session/events?since=abc').status_code == 400

    def test_export(self):
        response = self.client.get('/api/session/export')
        assert response.status_code == 200
        wb = openpyxl.load_workbook(io.BytesIO(response.data))
        assert wb.sheetnames == ['Updated Demand']
        assert wb['Updated Demand'].max_row == 5

    def test_supplementary_upload(self):
        file = create_mock_excel({'Sheet1': [['Product Number', 'Stock On Hand'], ['A', 9]]})
        response = self.client.post(
            '/api/session/upload/stock',
            data={'file': (file, 'stock.xlsx')},
            content_type='multipart/form-data',
        )
        assert response.status_code == 200
        body = self.client.get('/api/session/data').get_json()
        assert body['aggregates']['D100']['variantDemand']['A']['extras']['stockOnHand'] == 9.0

    def test_bad_upload(self):
        response = self.client.post(
            '/api/session/upload',
            data={'file': (io.BytesIO(b'not excel'), 'demand.xlsx')},
            content_type='multipart/form-data',
        )
        assert response.status_code == 400
        assert response.get_json()['success'] is False

    def test_end_session(self):
        response = self.client.post('/api/session/end', json={'user': 'alice'})
        assert response.status_code == 200
        body = self.client.get('/api/session/data').get_json()
        assert body['aggregates'] == {}
        assert body['dataUploaded'] is False
        assert self.client.get('/api/session/export').status_code == 409
