"""
Tests for the JSON API (recordvault/routes/).

Requests run against the real adapters with the pipeline executed inline.
"""

import pytest

from recordvault.backup.errors import (
    AdapterUnavailable,
    CompressionError,
    Conflict,
    IntegrityError,
    NotFound,
    PartialFailure,
    PermissionDenied,
    PreconditionFailed,
    StorageError,
    ValidationError,
)
from recordvault.backup.records import SQLAlchemyRecordStore
from recordvault.models import ActivityEvent
from recordvault.routes import status_for


def _login(client, username, password='Secret123'):
    return client.post('/api/auth/login', json={'username': username, 'password': password})


@pytest.fixture
def seeded(db):
    store = SQLAlchemyRecordStore()
    store.replace_all('services', [{'id': 's1', 'name': 'Web Development'}])
    store.replace_all('orders', [{'id': 'o1', 'service_id': 's1'}])
    return store


@pytest.fixture
def backup_id(admin_client, live_engine, seeded):
    response = admin_client.post('/api/backups', json={'name': 'api-backup'})
    assert response.status_code == 202
    return response.get_json()['id']


class TestAuthRoutes:

    def test_login_and_me(self, client, admin_user):
        response = _login(client, 'admin')
        assert response.status_code == 200
        assert response.get_json() == {'username': 'admin', 'role': 'admin'}

        response = client.get('/api/auth/me')
        assert response.get_json()['role'] == 'admin'

    def test_login_wrong_password(self, client, admin_user):
        response = _login(client, 'admin', 'Wrong1234')
        assert response.status_code == 401

    def test_login_missing_fields(self, client, db):
        response = client.post('/api/auth/login', json={'username': 'admin'})
        assert response.status_code == 400

    def test_logout(self, admin_client):
        assert admin_client.post('/api/auth/logout').status_code == 200
        assert admin_client.get('/api/auth/me').status_code == 401

    def test_health(self, client):
        assert client.get('/health').get_json() == {'status': 'healthy'}


class TestBackupRoutes:

    def test_requires_login(self, client, live_engine):
        response = client.get('/api/backups')
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Authentication required'

    def test_create_and_fetch(self, admin_client, backup_id):
        response = admin_client.get(f'/api/backups/{backup_id}')

        data = response.get_json()
        assert response.status_code == 200
        assert data['name'] == 'api-backup'
        assert data['status'] == 'completed'
        assert data['started_by'] == 'admin'
        assert 'Backup completed successfully' in data['logs']

    def test_create_records_activity(self, admin_client, backup_id):
        events = {event.event_type: event for event in ActivityEvent.query.all()}

        assert events['backup_started'].actor_id == 'admin'
        assert events['backup_completed'].details['backup_id'] == backup_id

    def test_create_rejects_bad_options(self, admin_client, live_engine):
        response = admin_client.post('/api/backups', json={'options': {'compression': 'lz4'}})

        assert response.status_code == 400
        assert response.get_json()['type'] == 'ValidationError'

    def test_body_must_be_object(self, admin_client, live_engine):
        response = admin_client.post('/api/backups', json=['manual'])
        assert response.status_code == 400

    @pytest.mark.parametrize('kind', [None, 'manual', 'full', 'incremental', 'emergency', 'scheduled'])
    def test_viewer_cannot_create_any_kind(self, client, viewer_user, live_engine, kind):
        _login(client, 'viewer')
        body = {} if kind is None else {'kind': kind}

        response = client.post('/api/backups', json=body)

        assert response.status_code == 403
        assert response.get_json()['type'] == 'PermissionDenied'
        assert live_engine.registry.count() == 0

    def test_scheduled_kind_rejected_for_callers(self, client, operator_user, live_engine, seeded):
        _login(client, 'operator')

        response = client.post('/api/backups', json={'kind': 'scheduled'})

        assert response.status_code == 400
        assert live_engine.registry.count() == 0

    def test_list_with_paging(self, admin_client, live_engine, seeded):
        for _ in range(3):
            admin_client.post('/api/backups', json={})

        response = admin_client.get('/api/backups?limit=2&offset=1')
        data = response.get_json()

        assert data['total'] == 3
        assert data['limit'] == 2
        assert data['offset'] == 1
        assert len(data['records']) == 2

    def test_list_limit_is_capped(self, admin_client, live_engine):
        data = admin_client.get('/api/backups?limit=5000').get_json()
        assert data['limit'] == 200

    def test_unknown_backup(self, admin_client, live_engine):
        response = admin_client.get('/api/backups/does-not-exist')
        assert response.status_code == 404

    def test_validate(self, admin_client, backup_id):
        response = admin_client.post(f'/api/backups/{backup_id}/validate')

        data = response.get_json()
        assert data['is_valid'] is True
        assert data['records_verified'] == 2

    def test_delete(self, admin_client, backup_id):
        assert admin_client.delete(f'/api/backups/{backup_id}').status_code == 200
        assert admin_client.get(f'/api/backups/{backup_id}').status_code == 404

    def test_cancel_completed_backup_conflicts(self, admin_client, backup_id):
        response = admin_client.post(f'/api/backups/{backup_id}/cancel')

        assert response.status_code == 409
        assert response.get_json()['type'] == 'PreconditionFailed'

    def test_current_when_idle(self, admin_client, live_engine):
        assert admin_client.get('/api/backups/current').get_json() == {'backup': None, 'progress': None}

    def test_storage_health(self, admin_client, live_engine, seeded):
        response = admin_client.get('/api/backups/health')

        assert response.status_code == 200
        data = response.get_json()
        assert data['healthy'] is True
        assert data['record_store']['collections'] == ['orders', 'services']

    def test_storage_health_reports_outage(self, admin_client, live_engine, tmp_path):
        live_engine.blob_store.base_path = tmp_path / 'missing'

        response = admin_client.get('/api/backups/health')

        assert response.status_code == 503
        assert 'does not exist' in response.get_json()['blob_store']['error']


class TestRestoreRoute:

    def test_restore_requires_confirmation(self, admin_client, backup_id, seeded):
        seeded.replace_all('services', [])

        response = admin_client.post(f'/api/backups/{backup_id}/restore', json={})

        assert response.status_code == 409
        assert seeded.read_all('services') == []

    def test_restore(self, admin_client, backup_id, seeded):
        seeded.replace_all('services', [])

        response = admin_client.post(f'/api/backups/{backup_id}/restore', json={
            'confirm_overwrite': True,
            'target_collections': ['services']
        })

        assert response.status_code == 200
        assert response.get_json()['restored_collections'] == ['services']
        assert seeded.read_all('services') == [{'id': 's1', 'name': 'Web Development'}]

    def test_string_flag_rejected(self, admin_client, backup_id, seeded):
        seeded.replace_all('services', [])

        response = admin_client.post(f'/api/backups/{backup_id}/restore', json={
            'confirm_overwrite': True,
            'restore_records': 'false'
        })

        assert response.status_code == 400
        assert seeded.read_all('services') == []

    def test_operator_cannot_restore(self, client, backup_id, operator_user):
        client.post('/api/auth/logout')
        _login(client, 'operator')

        response = client.post(f'/api/backups/{backup_id}/restore', json={'confirm_overwrite': True})

        assert response.status_code == 403


class TestConfigAndRetentionRoutes:

    def test_get_config(self, admin_client, live_engine):
        data = admin_client.get('/api/backups/config').get_json()

        assert data['schedule_type'] == 'daily'
        assert data['compression'] == 'gzip'

    def test_patch_config(self, admin_client, live_engine):
        response = admin_client.patch('/api/backups/config', json={'schedule_type': 'weekly', 'max_backups': 3})

        assert response.status_code == 200
        assert admin_client.get('/api/backups/config').get_json()['max_backups'] == 3

    def test_invalid_config(self, admin_client, live_engine):
        response = admin_client.put('/api/backups/config', json={'schedule_type': 'hourly'})
        assert response.status_code == 400

    def test_viewer_cannot_change_config(self, client, viewer_user, live_engine):
        _login(client, 'viewer')
        response = client.put('/api/backups/config', json={'max_backups': 3})
        assert response.status_code == 403

    def test_run_retention(self, admin_client, live_engine):
        response = admin_client.post('/api/backups/retention')

        assert response.status_code == 200
        assert response.get_json() == {'recovered': [], 'deleted': [], 'purged': [], 'errors': []}

    def test_viewer_cannot_run_retention(self, client, viewer_user, live_engine):
        _login(client, 'viewer')
        assert client.post('/api/backups/retention').status_code == 403


class TestErrorMapping:

    @pytest.mark.parametrize('error,status', [
        (ValidationError('bad'), 400),
        (PreconditionFailed('confirm'), 409),
        (Conflict('busy'), 409),
        (NotFound('gone'), 404),
        (PermissionDenied('no'), 403),
        (CompressionError('zlib'), 422),
        (IntegrityError('checksum'), 422),
        (AdapterUnavailable('down'), 503),
        (StorageError('s3'), 502),
        (PartialFailure(['services'], ['orders']), 500),
    ])
    def test_status_for(self, error, status):
        assert status_for(error) == status

    def test_partial_failure_body(self, admin_client, backup_id, live_engine, monkeypatch):
        def fail(request):
            raise PartialFailure(['services'], ['orders'], ['site_settings'])

        monkeypatch.setattr(live_engine.restorer, 'restore', fail)

        response = admin_client.post(f'/api/backups/{backup_id}/restore', json={'confirm_overwrite': True})

        data = response.get_json()
        assert response.status_code == 500
        assert data['restored'] == ['services']
        assert data['failed'] == ['orders']
        assert data['skipped'] == ['site_settings']
