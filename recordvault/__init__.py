import os
import logging
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from flask import Flask, current_app
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager


# Initialize extensions
db = SQLAlchemy()
login_manager = LoginManager()

EXTENSION_KEY = 'recordvault'


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (skipped when no log directory is configured)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'recordvault.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def build_engine(app, **overrides):
    """
    Construct the BackupEngine from app configuration.

    Args:
        app: Flask app instance
        **overrides: Collaborators or options replacing the configured ones

    Returns:
        BackupEngine
    """
    from recordvault.activity import DatabaseActivityLog
    from recordvault.auth import FlaskLoginAuthContext
    from recordvault.backup.engine import BackupEngine
    from recordvault.backup.errors import BackupError
    from recordvault.backup.records import SQLAlchemyRecordStore
    from recordvault.backup.registry import BackupRegistry
    from recordvault.backup.storage import create_blob_store
    from recordvault.backup.types import BackupConfig
    from recordvault.clock import SystemClock
    from sqlalchemy.exc import SQLAlchemyError

    clock = SystemClock()
    options = dict(
        registry=BackupRegistry(clock),
        record_store=SQLAlchemyRecordStore(),
        blob_store=create_blob_store(app.config),
        auth=FlaskLoginAuthContext(),
        clock=clock,
        activity_log=DatabaseActivityLog(),
        collections=app.config['BACKUP_COLLECTIONS'],
        file_groups=app.config['BACKUP_FILE_GROUPS'],
        include_file_contents=app.config['BACKUP_INCLUDE_FILE_CONTENTS'],
        default_config=BackupConfig.from_dict(app.config['BACKUP_DEFAULTS']),
        expired_audit_days=app.config['EXPIRED_AUDIT_DAYS'],
        stale_after=timedelta(minutes=app.config['BACKUP_STALE_MINUTES']),
        app=app
    )
    options.update(overrides)
    engine = BackupEngine(**options)

    # Fail backups left pending/running by a crashed or restarted process
    with engine.app_context():
        try:
            recovered = engine.recover_interrupted_backups()
        except (BackupError, SQLAlchemyError) as e:
            app.logger.warning(f"Could not recover interrupted backups: {e}")
        else:
            if recovered:
                app.logger.warning(f"Marked {len(recovered)} interrupted backup(s) as failed")

    return engine


def get_engine(app=None):
    """Return the BackupEngine registered on `app` (default: the current app)."""
    app = app or current_app._get_current_object()
    return app.extensions[EXTENSION_KEY]


def create_app(config_name=None, overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from recordvault.config import config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    if app.config.get('BLOB_STORE') == 'local':
        os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and database_uri != 'sqlite:///:memory:':
        os.makedirs(os.path.dirname(database_uri.replace('sqlite:///', '')) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # User loader callback
    @login_manager.user_loader
    def load_user(user_id):
        from recordvault.models import User
        from recordvault.auth import UserModel
        user = db.session.get(User, int(user_id))
        if user:
            return UserModel(user)
        return None

    @login_manager.unauthorized_handler
    def unauthorized():
        return {'error': 'Authentication required'}, 401

    # Register blueprints
    from recordvault.routes import auth_routes, backup_routes, register_error_handlers
    app.register_blueprint(auth_routes.bp)
    app.register_blueprint(backup_routes.bp)
    register_error_handlers(app)

    from recordvault.cli import register_commands
    register_commands(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema
    from recordvault import models  # noqa: F401
    with app.app_context():
        db.create_all()

    app.extensions[EXTENSION_KEY] = build_engine(app)

    # Initialize and start scheduler (only in designated worker or development child process)
    from recordvault.scheduler import init_scheduler, start_scheduler, stop_scheduler
    import atexit

    # Determine if this process should initialize the scheduler
    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # Scheduler initialization logic:
    # - Development mode: Only in Flask reloader child process (not parent)
    # - Production mode: Only in designated scheduler worker (SCHEDULER_WORKER=true)
    should_init_scheduler = False

    if not app.config.get('SCHEDULER_ENABLED', True):
        app.logger.info("Scheduler disabled by configuration")
    elif is_development:
        should_init_scheduler = is_reloader_child
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
    else:
        should_init_scheduler = is_scheduler_worker
        app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")

    if should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app, get_engine(app))
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
