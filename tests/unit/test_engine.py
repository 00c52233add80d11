"""
Unit tests for the backup engine (recordvault/backup/engine.py) and the
pipeline it runs (recordvault/backup/executor.py).
"""

import socket
import threading
from datetime import timedelta

import pytest

from recordvault import build_engine
from recordvault.backup.compression import decompress, unpack_artifact
from recordvault.backup.engine import BackupEngine, InlineExecutor
from recordvault.backup.errors import (
    Conflict,
    NotFound,
    PermissionDenied,
    PreconditionFailed,
    StorageError,
    ValidationError,
)
from recordvault.backup.integrity import checksum
from recordvault.backup.registry import BackupRegistry
from recordvault.backup.types import CAP_RESTORE, BackupConfig, BackupKind, BackupStatus, CompressionMode
from fakes import SAMPLE_COLLECTIONS, START_TIME, FakeRecordStore, make_completed, make_record


class TestCreateBackup:
    """Test create_backup() with an inline executor."""

    def test_returns_pending_record(self, engine):
        record = engine.create_backup('manual', name='before-upgrade')

        assert record.status == BackupStatus.PENDING
        assert record.name == 'before-upgrade'
        assert record.kind == BackupKind.MANUAL
        assert record.started_by == 'admin'
        assert record.collections_included == ['services', 'orders', 'site_settings']
        assert record.expires_at == START_TIME + timedelta(days=30)

    def test_pipeline_completes(self, engine, registry, blob_store):
        record = engine.create_backup('manual')
        done = registry.get(record.id)

        assert done.status == BackupStatus.COMPLETED
        assert done.progress == 100
        assert done.artifact_path == f"backups/2024/01/{record.id}.rvbk"
        assert done.size_bytes == len(blob_store.blobs[done.artifact_path])
        assert done.checksum == checksum(blob_store.blobs[done.artifact_path])
        assert done.completed_at is not None
        assert done.error_message is None
        assert 'Backup completed successfully' in done.logs

    def test_artifact_contains_snapshot(self, engine, registry, blob_store):
        record = engine.create_backup('full', options={'compression': 'zip', 'collections': ['orders']})
        done = registry.get(record.id)

        header, body = unpack_artifact(blob_store.blobs[done.artifact_path])
        payload = decompress(body, CompressionMode.ZIP)

        assert header['backup_id'] == record.id
        assert header['kind'] == 'full'
        assert payload.collections == {'orders': SAMPLE_COLLECTIONS['orders']}

    def test_default_name(self, engine):
        record = engine.create_backup('emergency')
        assert record.name == 'backup-emergency-2024-01-15T12-00-00'

    def test_progress_events_in_order(self, engine):
        events = []
        engine.on_progress(events.append)

        engine.create_backup('manual')

        progress = [event.overall_progress for event in events]
        assert progress == sorted(progress)
        assert progress[0] == 0
        assert progress[-1] == 100
        assert events[-1].step_index == events[-1].total_steps

    def test_activity_events(self, engine, activity_log):
        record = engine.create_backup('manual')

        assert activity_log.types()[:2] == ['backup_started', 'backup_completed']
        started = activity_log.events[0][1]
        assert started['backup_id'] == record.id
        assert started['actor_id'] == 'admin'

    def test_slot_released_after_run(self, engine):
        engine.create_backup('manual')

        assert engine.current_backup() is None
        assert engine.get_current_progress() is None
        engine.create_backup('manual')

    @pytest.mark.parametrize('options', [
        {'collections': 'services'},
        {'compression': 'brotli'},
        {'retention_days': 0},
        {'include_files': 'yes'},
        {'encrypt': True},
    ])
    def test_invalid_options(self, engine, registry, options):
        with pytest.raises(ValidationError):
            engine.create_backup('manual', options=options)
        assert registry.count() == 0

    def test_invalid_kind(self, engine):
        with pytest.raises(ValidationError):
            engine.create_backup('hourly')

    def test_nothing_selected(self, engine):
        engine.update_backup_config({'include_database': False, 'include_files': False})

        with pytest.raises(ValidationError):
            engine.create_backup('manual')

    def test_requires_create_capability(self, engine, auth, registry):
        auth.capabilities = {CAP_RESTORE}

        with pytest.raises(PermissionDenied):
            engine.create_backup('manual')
        assert registry.count() == 0

    @pytest.mark.parametrize('kind', ['manual', 'full', 'scheduled', 'hourly'])
    def test_capability_checked_for_every_kind(self, engine, auth, registry, kind):
        auth.capabilities = set()

        with pytest.raises(PermissionDenied):
            engine.create_backup(kind)
        assert registry.count() == 0

    def test_scheduled_kind_reserved_for_scheduler(self, engine, registry):
        with pytest.raises(ValidationError):
            engine.create_backup('scheduled')
        assert registry.count() == 0

    def test_scheduled_backup_needs_no_capability(self, engine, auth, registry):
        auth.capabilities = set()

        record = engine.create_scheduled_backup(name='scheduled-2024-01-15')

        done = registry.get(record.id)
        assert done.kind == BackupKind.SCHEDULED
        assert done.status == BackupStatus.COMPLETED
        assert done.started_by is None
        assert done.owner == engine.owner

    def test_snapshot_warnings_recorded(self, engine, registry, record_store):
        record_store.failing_reads.add('orders')

        done = registry.get(engine.create_backup('manual').id)

        assert done.status == BackupStatus.COMPLETED
        assert any('orders' in warning for warning in done.warnings)

    def test_unreachable_record_store_fails_backup(self, engine, registry, record_store, activity_log):
        record_store.unavailable = True

        done = registry.get(engine.create_backup('manual').id)

        assert done.status == BackupStatus.FAILED
        assert done.error_message == 'Injected outage'
        assert done.artifact_path is None
        assert 'backup_failed' in activity_log.types()

    def test_blob_write_failure_fails_backup(self, engine, registry, blob_store):
        blob_store.fail_put = True

        done = registry.get(engine.create_backup('manual').id)

        assert done.status == BackupStatus.FAILED
        assert 'Injected put failure' in done.error_message
        assert blob_store.blobs == {}

    def test_completed_backup_triggers_retention(self, engine, registry, blob_store):
        engine.update_backup_config({'max_backups': 2})
        make_completed(registry, 'old-1', START_TIME - timedelta(days=2), blob_store)
        make_completed(registry, 'old-2', START_TIME - timedelta(days=1), blob_store)

        record = engine.create_backup('manual')

        remaining = {r.id for r in registry.list()}
        assert remaining == {'old-2', record.id}


class TestCancel:

    def test_nothing_running(self, engine):
        with pytest.raises(PreconditionFailed):
            engine.cancel_backup()

    def test_cannot_cancel_completed(self, engine):
        record = engine.create_backup('manual')
        with pytest.raises(PreconditionFailed):
            engine.cancel_backup(record.id)

    def test_unknown_backup(self, engine):
        with pytest.raises(NotFound):
            engine.cancel_backup('missing')

    def test_requires_create_capability(self, engine, auth):
        auth.capabilities = set()
        with pytest.raises(PermissionDenied):
            engine.cancel_backup()

    def test_cancel_flag_from_registry_is_honoured(self, engine, registry):
        def request_cancel(event):
            if event.step_index == 1:
                registry.update(event.backup_id, cancellation_requested=True)

        engine.on_progress(request_cancel)
        record = engine.create_backup('manual')
        done = registry.get(record.id)

        assert done.status == BackupStatus.CANCELLED
        assert done.error_message is None
        assert done.artifact_path is None


class TestQueriesAndDelete:

    def test_get_backups_newest_first(self, engine, registry):
        make_completed(registry, 'older', START_TIME - timedelta(days=1))
        make_completed(registry, 'newer', START_TIME)

        assert [r.id for r in engine.get_backups()] == ['newer', 'older']
        assert [r.id for r in engine.get_backups(limit=1, offset=1)] == ['older']
        assert engine.get_backup_by_id('missing') is None

    def test_delete_removes_artifact_then_record(self, engine, registry, blob_store, activity_log):
        make_completed(registry, 'b1', START_TIME, blob_store)

        engine.delete_backup('b1')

        assert registry.find('b1') is None
        assert blob_store.deleted == ['backups/b1.rvbk']
        assert activity_log.types()[-1] == 'backup_deleted'

    def test_delete_keeps_record_when_artifact_delete_fails(self, engine, registry, blob_store):
        make_completed(registry, 'b1', START_TIME, blob_store)
        blob_store.fail_delete = True

        with pytest.raises(StorageError):
            engine.delete_backup('b1')
        assert registry.find('b1') is not None

    def test_delete_unknown(self, engine):
        with pytest.raises(NotFound):
            engine.delete_backup('missing')

    def test_delete_active_backup_conflicts(self, engine, registry):
        registry.create(make_record(id='pending-one'))

        with pytest.raises(Conflict):
            engine.delete_backup('pending-one')

    def test_delete_requires_capability(self, engine, auth, registry):
        make_completed(registry, 'b1', START_TIME)
        auth.capabilities = {CAP_RESTORE}

        with pytest.raises(PermissionDenied):
            engine.delete_backup('b1')


class TestValidateBackup:

    def test_valid_backup(self, engine, registry):
        record = engine.create_backup('manual')

        report = engine.validate_backup(record.id)

        assert report.is_valid
        assert report.checksum_matches
        assert report.size_matches
        assert report.collections_verified == 3
        assert report.records_verified == 4
        assert report.errors == []

    def test_corrupted_byte_detected(self, engine, registry, blob_store):
        record = registry.get(engine.create_backup('manual').id)
        blob = bytearray(blob_store.blobs[record.artifact_path])
        blob[len(blob) // 2] ^= 0x01
        blob_store.blobs[record.artifact_path] = bytes(blob)

        report = engine.validate_backup(record.id)

        assert not report.is_valid
        assert not report.checksum_matches
        assert 'Checksum mismatch - the artifact may be corrupt' in report.errors

    def test_missing_artifact(self, engine, registry, blob_store):
        record = registry.get(engine.create_backup('manual').id)
        del blob_store.blobs[record.artifact_path]

        report = engine.validate_backup(record.id)

        assert not report.is_valid
        assert 'could not be read' in report.errors[0]

    def test_not_completed(self, engine, registry, record_store):
        record_store.unavailable = True
        record = engine.create_backup('manual')

        report = engine.validate_backup(record.id)
        assert not report.is_valid

    def test_unknown(self, engine):
        with pytest.raises(NotFound):
            engine.validate_backup('missing')


class TestBackupConfig:

    def test_defaults(self, engine):
        config = engine.get_backup_config()
        assert config.schedule_type == 'daily'
        assert config.include_files is False

    def test_partial_update_persists(self, engine, activity_log):
        engine.update_backup_config({'schedule_type': 'weekly', 'max_backups': 5})

        config = engine.get_backup_config()
        assert config.schedule_type == 'weekly'
        assert config.max_backups == 5
        assert activity_log.types() == ['config_updated']

    @pytest.mark.parametrize('changes', [
        {'schedule_type': 'hourly'},
        {'schedule_time': '25:00'},
        {'max_backups': 0},
        {'retention_days': -1},
        {'compression': 'lz4'},
        {'unknown_field': 1},
    ])
    def test_invalid_update_rejected(self, engine, changes):
        with pytest.raises(ValidationError):
            engine.update_backup_config(changes)
        assert engine.get_backup_config().schedule_type == 'daily'

    def test_retention_uses_configured_cap(self, engine, registry, blob_store, activity_log):
        for day in range(4):
            make_completed(registry, f"b{day}", START_TIME - timedelta(days=4 - day), blob_store)
        engine.update_backup_config({'max_backups': 1})

        summary = engine.run_retention()

        assert set(summary['deleted']) == {'b0', 'b1', 'b2'}
        assert activity_log.types()[-1] == 'retention_swept'


class TestRecoverInterruptedBackups:
    """Orphaned pending/running records are failed so they never stay active."""

    def test_ownerless_record_failed(self, engine, registry, activity_log):
        registry.create(make_record(id='orphan'))
        registry.update('orphan', status=BackupStatus.RUNNING)

        assert engine.recover_interrupted_backups() == ['orphan']

        record = registry.get('orphan')
        assert record.status == BackupStatus.FAILED
        assert record.error_message.startswith('Backup interrupted')
        assert record.completed_at == START_TIME
        assert 'backup_failed' in activity_log.types()

    def test_owner_process_gone(self, engine, registry, monkeypatch):
        registry.create(make_record(id='orphan', owner=f"{socket.gethostname()}:4242"))
        monkeypatch.setattr('recordvault.backup.engine._process_alive', lambda pid: False)

        assert engine.recover_interrupted_backups() == ['orphan']
        assert 'is gone' in registry.get('orphan').error_message

    def test_live_owner_with_recent_heartbeat_kept(self, engine, registry, clock):
        registry.create(make_record(id='remote', owner='other-host:1'))
        clock.advance(minutes=30)

        assert engine.recover_interrupted_backups() == []
        assert registry.get('remote').status == BackupStatus.PENDING

    def test_stale_heartbeat_failed(self, engine, registry, clock):
        registry.create(make_record(id='remote', owner='other-host:1'))
        clock.advance(hours=2)

        assert engine.recover_interrupted_backups() == ['remote']
        assert 'no progress since' in registry.get('remote').error_message

    def test_recovery_frees_slot(self, engine, registry):
        registry.create(make_record(id='orphan'))
        with pytest.raises(Conflict):
            engine.create_backup('manual')

        engine.recover_interrupted_backups()
        record = engine.create_backup('manual')

        assert registry.get(record.id).status == BackupStatus.COMPLETED

    def test_retention_run_recovers(self, engine, registry):
        registry.create(make_record(id='orphan'))

        summary = engine.run_retention()

        assert summary['recovered'] == ['orphan']
        assert registry.get('orphan').status == BackupStatus.FAILED

    def test_build_engine_recovers_at_startup(self, app, db, registry):
        registry.create(make_record(id='orphan'))
        registry.update('orphan', status=BackupStatus.RUNNING)

        restarted = build_engine(app, executor=InlineExecutor())

        assert restarted.registry.get('orphan').status == BackupStatus.FAILED
        assert restarted.current_backup() is None


class TestCheckHealth:

    def test_healthy(self, engine):
        report = engine.check_health()

        assert report['healthy'] is True
        assert report['blob_store'] == {'ok': True, 'error': None}
        assert report['record_store']['collections'] == sorted(SAMPLE_COLLECTIONS)

    def test_blob_store_unreachable(self, engine, blob_store):
        blob_store.fail_connect = True

        report = engine.check_health()

        assert report['healthy'] is False
        assert 'Injected connection failure' in report['blob_store']['error']
        assert report['record_store']['ok'] is True

    def test_record_store_unavailable(self, engine, record_store):
        record_store.unavailable = True

        report = engine.check_health()

        assert report['healthy'] is False
        assert report['record_store']['ok'] is False
        assert report['blob_store']['ok'] is True


class TestThreadedEngine:
    """Pipelines on a real worker thread."""

    def test_second_backup_conflicts_while_running(self, threaded_engine, record_store):
        record_store.gate = threading.Event()
        first = threaded_engine.create_backup('manual')
        assert record_store.entered.wait(timeout=5)

        with pytest.raises(Conflict):
            threaded_engine.create_backup('manual')

        assert threaded_engine.current_backup().id == first.id
        record_store.gate.set()
        threaded_engine.wait(timeout=10)

        done = threaded_engine.registry.get(first.id)
        assert done.status == BackupStatus.COMPLETED
        assert threaded_engine.registry.count(BackupStatus.COMPLETED) == 1
        assert threaded_engine.registry.count() == 1

    def test_cancel_running_backup(self, threaded_engine, record_store, blob_store, activity_log):
        record_store.gate = threading.Event()
        record = threaded_engine.create_backup('manual')
        assert record_store.entered.wait(timeout=5)

        requested = threaded_engine.cancel_backup()
        assert requested.id == record.id
        assert requested.cancellation_requested

        record_store.gate.set()
        threaded_engine.wait(timeout=10)

        done = threaded_engine.registry.get(record.id)
        assert done.status == BackupStatus.CANCELLED
        assert done.error_message is None
        assert done.artifact_path is None
        assert blob_store.blobs == {}
        assert 'backup_cancelled' in activity_log.types()
        assert threaded_engine.current_backup() is None

    def test_progress_visible_while_running(self, threaded_engine, record_store):
        record_store.gate = threading.Event()
        threaded_engine.create_backup('manual')
        assert record_store.entered.wait(timeout=5)

        progress = threaded_engine.get_current_progress()
        assert progress is not None
        assert progress.step_name == 'Preparing backup'

        record_store.gate.set()
        threaded_engine.wait(timeout=10)

    def test_second_engine_on_same_database_conflicts(
        self, threaded_app, threaded_engine, record_store, blob_store, auth, clock
    ):
        other = BackupEngine(
            BackupRegistry(clock),
            FakeRecordStore(SAMPLE_COLLECTIONS),
            blob_store,
            auth,
            clock,
            collections=list(SAMPLE_COLLECTIONS),
            default_config=BackupConfig(include_files=False),
            executor=InlineExecutor(),
            app=threaded_app,
            owner='other-host:1'
        )
        record_store.gate = threading.Event()
        first = threaded_engine.create_backup('manual')
        assert record_store.entered.wait(timeout=5)

        # The other engine's own slot is empty; the shared registry refuses it
        with pytest.raises(Conflict):
            other.create_backup('manual')
        assert threaded_engine.registry.count() == 1

        record_store.gate.set()
        threaded_engine.wait(timeout=10)
        assert threaded_engine.registry.get(first.id).status == BackupStatus.COMPLETED

        second = other.create_backup('manual')
        assert other.registry.get(second.id).status == BackupStatus.COMPLETED
