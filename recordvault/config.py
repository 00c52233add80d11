import os
from datetime import timedelta


class Config:
    """Base configuration"""

    # Flask
    # Get SECRET_KEY from environment, or read the persistent one from the data directory
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        secret_file = '/data/.secret_key'
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                SECRET_KEY = f.read().strip()
        else:
            # Fallback for development mode - sessions will not survive a restart
            import secrets
            SECRET_KEY = secrets.token_hex(32)

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/recordvault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session
    PERMANENT_SESSION_LIFETIME = timedelta(hours=24)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Blob store: 'local' or 's3'
    BLOB_STORE = os.environ.get('BLOB_STORE', 'local')
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION', 'us-east-1')
    S3_PREFIX = os.environ.get('S3_PREFIX', '')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')

    # Backup contents
    BACKUP_COLLECTIONS = [
        'admin_users',
        'admin_sessions',
        'services',
        'payment_methods',
        'orders',
        'site_settings',
        'content_management',
        'page_templates',
        'analytics_events',
        'system_logs',
    ]
    BACKUP_FILE_GROUPS = {
        'media': 'media/',
        'uploads': 'uploads/',
    }
    BACKUP_INCLUDE_FILE_CONTENTS = os.environ.get('BACKUP_INCLUDE_FILE_CONTENTS', 'false').lower() == 'true'

    # Policy used until an operator saves one
    BACKUP_DEFAULTS = {
        'auto_backup_enabled': True,
        'schedule_type': 'daily',
        'schedule_time': '02:00',
        'retention_days': 30,
        'compression': 'gzip',
        'include_files': True,
        'include_database': True,
        'max_backups': 10,
        'email_notifications': False,
    }
    EXPIRED_AUDIT_DAYS = 7
    # Active backups with no heartbeat for this long are failed as orphaned
    BACKUP_STALE_MINUTES = int(os.environ.get('BACKUP_STALE_MINUTES', '60'))

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_TICK_SECONDS = 60
    BACKUP_SCHEDULE_WINDOW_MINUTES = 15
    RETENTION_SWEEP_HOUR = 2


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "recordvault.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')


class TestingConfig(Config):
    """Test configuration: in-memory database, no background scheduler"""
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    BLOB_STORE = 'local'
    # Tests pass tmp paths for these through create_app overrides
    LOG_DIR = None
    LOCAL_BACKUP_DIR = None


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False

    # Production security
    SESSION_COOKIE_SECURE = os.environ.get('HTTPS_ENABLED', 'false').lower() == 'true'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
