from flask_login import UserMixin
from recordvault import db
from recordvault.clock import utcnow
from recordvault.backup.types import BackupRecord, BackupKind, BackupStatus, CompressionMode


class User(UserMixin, db.Model):
    """Operator account for the admin dashboard"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), default='viewer', nullable=False)  # admin, operator, viewer
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f'<User {self.username} role={self.role}>'


class BackupLog(db.Model):
    """Backup registry entry: one row per backup attempt"""
    __tablename__ = 'backup_logs'

    id = db.Column(db.String(36), primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    kind = db.Column(db.String(20), nullable=False)  # full, incremental, manual, scheduled, emergency
    status = db.Column(db.String(20), nullable=False, index=True)  # pending, running, completed, failed, cancelled, expired
    progress = db.Column(db.Integer, default=0, nullable=False)
    collections_included = db.Column(db.JSON, nullable=False, default=list)
    compression = db.Column(db.String(10), nullable=False)  # none, gzip, zip
    include_files = db.Column(db.Boolean, default=False, nullable=False)
    artifact_path = db.Column(db.String(500))
    size_bytes = db.Column(db.BigInteger)
    checksum = db.Column(db.String(128))
    error_message = db.Column(db.Text)
    started_by = db.Column(db.String(80))
    retention_days = db.Column(db.Integer, nullable=False)
    expires_at = db.Column(db.DateTime)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    completed_at = db.Column(db.DateTime)
    cancellation_requested = db.Column(db.Boolean, default=False, nullable=False)
    warnings = db.Column(db.JSON, nullable=False, default=list)
    logs = db.Column(db.Text)  # Detailed execution logs
    owner = db.Column(db.String(255))  # host:pid of the process running the pipeline
    heartbeat_at = db.Column(db.DateTime)
    # True while pending/running, NULL otherwise; the unique index allows one active row
    active_slot = db.Column(db.Boolean, unique=True)

    def to_record(self) -> BackupRecord:
        """Detached copy safe to hand across threads."""
        return BackupRecord(
            id=self.id,
            name=self.name,
            kind=BackupKind(self.kind),
            status=BackupStatus(self.status),
            progress=self.progress or 0,
            collections_included=list(self.collections_included or []),
            compression=CompressionMode(self.compression),
            include_files=bool(self.include_files),
            artifact_path=self.artifact_path,
            size_bytes=self.size_bytes,
            checksum=self.checksum,
            error_message=self.error_message,
            started_by=self.started_by,
            retention_days=self.retention_days,
            expires_at=self.expires_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            cancellation_requested=bool(self.cancellation_requested),
            warnings=list(self.warnings or []),
            logs=self.logs,
            owner=self.owner,
            heartbeat_at=self.heartbeat_at
        )

    def __repr__(self):
        return f'<BackupLog {self.id} kind={self.kind} status={self.status}>'


class BackupSetting(db.Model):
    """Key/value settings store (backup policy lives under 'backup_config')"""
    __tablename__ = 'backup_settings'

    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(db.JSON, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f'<BackupSetting {self.key}>'


class CollectionRecord(db.Model):
    """One record of a live application collection"""
    __tablename__ = 'collection_records'
    __table_args__ = (
        db.UniqueConstraint('collection', 'position', name='uq_collection_position'),
    )

    id = db.Column(db.Integer, primary_key=True)
    collection = db.Column(db.String(100), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)
    data = db.Column(db.JSON, nullable=False)

    def __repr__(self):
        return f'<CollectionRecord {self.collection}#{self.position}>'


class ActivityEvent(db.Model):
    """Audit trail of backup activity"""
    __tablename__ = 'activity_events'

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(50), nullable=False, index=True)
    category = db.Column(db.String(50), default='backup', nullable=False)
    actor_id = db.Column(db.String(80))
    details = db.Column('metadata', db.JSON)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f'<ActivityEvent {self.event_type}>'
