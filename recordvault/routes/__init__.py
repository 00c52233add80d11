"""
HTTP routes and the backup error -> status code mapping.
"""

import logging

from flask import jsonify

from recordvault.backup.errors import (
    AdapterUnavailable,
    BackupError,
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

logger = logging.getLogger(__name__)

# Most specific classes first
ERROR_STATUS = (
    (ValidationError, 400),
    (PreconditionFailed, 409),
    (Conflict, 409),
    (NotFound, 404),
    (PermissionDenied, 403),
    (CompressionError, 422),
    (IntegrityError, 422),
    (AdapterUnavailable, 503),
    (StorageError, 502),
    (PartialFailure, 500),
)


def status_for(error: BackupError) -> int:
    for error_cls, status in ERROR_STATUS:
        if isinstance(error, error_cls):
            return status
    return 500


def register_error_handlers(app):
    """Render every BackupError as JSON with its mapped status code."""

    @app.errorhandler(BackupError)
    def handle_backup_error(error):
        status = status_for(error)
        body = {'error': str(error), 'type': error.__class__.__name__}
        if isinstance(error, PartialFailure):
            body.update(error.to_dict())
        if status >= 500:
            logger.error(f"Backup request failed ({status}): {error}")
        return jsonify(body), status
