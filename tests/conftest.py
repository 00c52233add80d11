"""
Shared pytest fixtures for RecordVault tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Users with roles and logged-in clients
- Fixtures wrapping the in-memory fakes from fakes.py
- Engines that run the pipeline inline or on a real worker thread
"""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from recordvault import EXTENSION_KEY, build_engine, create_app, db as _db
from recordvault.auth import hash_password
from recordvault.backup.engine import BackupEngine, InlineExecutor
from recordvault.backup.registry import BackupRegistry
from recordvault.backup.types import BackupConfig
from recordvault.models import User

from fakes import (
    SAMPLE_COLLECTIONS,
    FakeBlobStore,
    FakeClock,
    FakeRecordStore,
    RecordingActivityLog,
    StaticAuth,
)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing', overrides={
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
    })
    yield app
    app.extensions[EXTENSION_KEY].shutdown(wait=True)


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


def _make_user(db, username, role):
    user = User(username=username, password_hash=hash_password('Secret123'), role=role)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db):
    """
    Create an admin user.

    Username: admin
    Password: Secret123
    """
    return _make_user(db, 'admin', 'admin')


@pytest.fixture(scope='function')
def operator_user(db):
    return _make_user(db, 'operator', 'operator')


@pytest.fixture(scope='function')
def viewer_user(db):
    return _make_user(db, 'viewer', 'viewer')


def login(client, username, password='Secret123'):
    return client.post('/api/auth/login', json={'username': username, 'password': password})


@pytest.fixture(scope='function')
def admin_client(client, admin_user):
    """Test client logged in as the admin user."""
    response = login(client, 'admin')
    assert response.status_code == 200
    return client


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def record_store():
    return FakeRecordStore(SAMPLE_COLLECTIONS)


@pytest.fixture
def auth():
    return StaticAuth()


@pytest.fixture
def activity_log():
    return RecordingActivityLog()


@pytest.fixture
def registry(db, clock):
    return BackupRegistry(clock)


def build_test_engine(app, record_store, blob_store, auth, clock, activity_log, executor, **overrides):
    options = dict(
        activity_log=activity_log,
        collections=list(SAMPLE_COLLECTIONS),
        file_groups={'media': 'media/'},
        default_config=BackupConfig(include_files=False),
        executor=executor,
        app=app,
    )
    options.update(overrides)
    return BackupEngine(BackupRegistry(clock), record_store, blob_store, auth, clock, **options)


@pytest.fixture
def engine(app, db, record_store, blob_store, auth, clock, activity_log):
    """Engine that runs each backup pipeline synchronously inside create_backup()."""
    engine = build_test_engine(app, record_store, blob_store, auth, clock, activity_log, InlineExecutor())
    app.extensions[EXTENSION_KEY] = engine
    return engine


@pytest.fixture
def live_engine(app, db):
    """Engine on the real adapters (database, local blobs, Flask-Login), run inline."""
    engine = build_engine(app, executor=InlineExecutor())
    app.extensions[EXTENSION_KEY] = engine
    return engine


@pytest.fixture
def threaded_app(tmp_path):
    """App on a file-backed SQLite database, safe to share across threads."""
    app = create_app('testing', overrides={
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'threaded.db'}",
    })
    with app.app_context():
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def threaded_engine(threaded_app, record_store, blob_store, auth, clock, activity_log):
    """Engine that runs pipelines on a real background worker thread."""
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='test-backup')
    engine = build_test_engine(threaded_app, record_store, blob_store, auth, clock, activity_log, executor)
    yield engine
    if record_store.gate is not None:
        record_store.gate.set()
    engine.shutdown(wait=True)


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('recordvault.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield mock_sched
