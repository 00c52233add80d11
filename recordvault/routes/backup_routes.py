"""
Backup routes - thin JSON wrappers over the BackupEngine facade.
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required

from recordvault import get_engine
from recordvault.backup.errors import PermissionDenied, ValidationError
from recordvault.backup.types import CAP_CREATE, CAP_DELETE


bp = Blueprint('backups', __name__, url_prefix='/api/backups')

MAX_PAGE_SIZE = 200


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require_capability(capability: str):
    auth = get_engine().auth
    actor_id = auth.current_actor_id()
    if actor_id is None or not auth.has_capability(actor_id, capability):
        raise PermissionDenied(f"This action requires the {capability} capability")


@bp.route('', methods=['GET'])
@login_required
def list_backups():
    """
    Get backups newest first with pagination.

    Query params:
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with backup records and metadata
    """
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(0, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset)

    engine = get_engine()
    records = engine.get_backups(limit=limit, offset=offset)

    return jsonify({
        'records': [record.to_dict() for record in records],
        'total': engine.registry.count(),
        'limit': limit,
        'offset': offset
    })


@bp.route('', methods=['POST'])
@login_required
def create_backup():
    """
    Start a backup.

    Request body:
        - kind: full/incremental/manual/emergency (default: manual)
        - name: Optional label
        - options: Optional {collections, compression, retention_days, include_files}

    Returns:
        JSON with the pending record (202)
    """
    data = _json_body()
    record = get_engine().create_backup(
        kind=data.get('kind', 'manual'),
        name=data.get('name'),
        options=data.get('options')
    )
    return jsonify(record.to_dict()), 202


@bp.route('/<backup_id>', methods=['GET'])
@login_required
def get_backup(backup_id):
    """
    Get a single backup including its execution log.
    """
    record = get_engine().registry.get(backup_id)
    return jsonify(record.to_dict(include_logs=True))


@bp.route('/<backup_id>', methods=['DELETE'])
@login_required
def delete_backup(backup_id):
    get_engine().delete_backup(backup_id)
    return jsonify({'message': f'Backup {backup_id} deleted'})


@bp.route('/<backup_id>/validate', methods=['POST'])
@login_required
def validate_backup(backup_id):
    report = get_engine().validate_backup(backup_id)
    return jsonify(report.to_dict())


@bp.route('/<backup_id>/restore', methods=['POST'])
@login_required
def restore_backup(backup_id):
    """
    Restore a completed backup. DESTRUCTIVE: target collections are replaced.

    Request body:
        - confirm_overwrite: must be true
        - restore_records: bool (default: true)
        - restore_files: bool (default: false)
        - target_collections: Optional list of collection names

    Returns:
        JSON restore report
    """
    data = _json_body()
    data['backup_id'] = backup_id
    report = get_engine().restore_from_backup(data)
    return jsonify(report.to_dict())


@bp.route('/<backup_id>/cancel', methods=['POST'])
@login_required
def cancel_backup(backup_id):
    """
    Request cancellation of a running backup.

    Returns:
        JSON with cancellation status message
    """
    record = get_engine().cancel_backup(backup_id)
    return jsonify({
        'message': 'Cancellation requested. The backup will stop at the next safe checkpoint.',
        'backup': record.to_dict()
    }), 202


@bp.route('/current', methods=['GET'])
@login_required
def current_backup():
    """
    Get the in-flight backup and its latest progress event, if any.
    """
    engine = get_engine()
    record = engine.current_backup()
    progress = engine.get_current_progress()
    return jsonify({
        'backup': record.to_dict() if record else None,
        'progress': progress.to_dict() if progress else None
    })


@bp.route('/config', methods=['GET'])
@login_required
def get_config():
    return jsonify(get_engine().get_backup_config().to_dict())


@bp.route('/config', methods=['PUT', 'PATCH'])
@login_required
def update_config():
    """
    Update the backup policy. Only the fields present in the body change.

    Returns:
        JSON with the full saved config
    """
    _require_capability(CAP_CREATE)
    config = get_engine().update_backup_config(_json_body())
    return jsonify(config.to_dict())


@bp.route('/retention', methods=['POST'])
@login_required
def run_retention():
    """
    Run the retention sweep now.

    Returns:
        JSON with recovered, deleted, purged and errors lists
    """
    _require_capability(CAP_DELETE)
    summary = get_engine().run_retention()
    return jsonify({key: summary[key] for key in ('recovered', 'deleted', 'purged', 'errors')})


@bp.route('/health', methods=['GET'])
@login_required
def storage_health():
    """
    Report whether the blob store and the record store are reachable.

    Returns:
        JSON health report (200 when both stores respond, 503 otherwise)
    """
    report = get_engine().check_health()
    return jsonify(report), 200 if report['healthy'] else 503
