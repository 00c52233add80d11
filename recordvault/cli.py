"""
Flask CLI commands for operating the backup engine from a shell.

Commands run on behalf of a named user (--user), so the same capability
checks apply as over HTTP.
"""

import json

import click
from flask.cli import AppGroup, with_appcontext

from recordvault import db, get_engine
from recordvault.auth import ROLES, acting_as, hash_password, validate_password_strength
from recordvault.backup.errors import BackupError, PartialFailure
from recordvault.models import User


backup_cli = AppGroup('backup', help='Create, inspect and restore backups.')


def _load_user(username):
    user = User.query.filter_by(username=username).first()
    if user is None:
        raise click.ClickException(f"Unknown user: {username}")
    return user


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(error: BackupError):
    message = f"{error.__class__.__name__}: {error}"
    if isinstance(error, PartialFailure):
        message += f"\n{json.dumps(error.to_dict(), indent=2)}"
    raise click.ClickException(message)


@backup_cli.command('create')
@click.option('--user', 'username', required=True, help='Acting user.')
@click.option('--kind', default='manual', show_default=True,
              type=click.Choice(['full', 'incremental', 'manual', 'emergency']))
@click.option('--name', default=None, help='Backup label.')
@click.option('--collection', 'collections', multiple=True, help='Collection to include (repeatable).')
@click.option('--compression', type=click.Choice(['none', 'gzip', 'zip']), default=None)
@click.option('--retention-days', type=int, default=None)
@click.option('--files/--no-files', 'include_files', default=None)
@click.option('--wait/--no-wait', default=True, show_default=True, help='Block until the backup finishes.')
def create_command(username, kind, name, collections, compression, retention_days, include_files, wait):
    """Start a backup."""
    options = {}
    if collections:
        options['collections'] = list(collections)
    if compression:
        options['compression'] = compression
    if retention_days is not None:
        options['retention_days'] = retention_days
    if include_files is not None:
        options['include_files'] = include_files

    engine = get_engine()
    with acting_as(_load_user(username)):
        try:
            record = engine.create_backup(kind=kind, name=name, options=options)
        except BackupError as e:
            _fail(e)

    if wait:
        record = engine.wait() or engine.registry.get(record.id)

    _echo_json(record.to_dict())


@backup_cli.command('list')
@click.option('--limit', default=50, show_default=True)
@click.option('--offset', default=0, show_default=True)
def list_command(limit, offset):
    """List backups newest first."""
    for record in get_engine().get_backups(limit=limit, offset=offset):
        size = f"{record.size_bytes / 1024:.1f} KB" if record.size_bytes else '-'
        click.echo(
            f"{record.id}  {record.status.value:<10} {record.kind.value:<12} "
            f"{record.started_at:%Y-%m-%d %H:%M}  {size:>10}  {record.name}"
        )


@backup_cli.command('validate')
@click.argument('backup_id')
def validate_command(backup_id):
    """Verify a backup artifact end to end."""
    try:
        report = get_engine().validate_backup(backup_id)
    except BackupError as e:
        _fail(e)

    _echo_json(report.to_dict())
    if not report.is_valid:
        raise click.exceptions.Exit(1)


@backup_cli.command('restore')
@click.argument('backup_id')
@click.option('--user', 'username', required=True, help='Acting user.')
@click.option('--collection', 'collections', multiple=True, help='Restore only this collection (repeatable).')
@click.option('--records/--no-records', 'restore_records', default=True, show_default=True)
@click.option('--files/--no-files', 'restore_files', default=False, show_default=True)
@click.option('--yes', 'confirm', is_flag=True, help='Confirm that live data will be overwritten.')
def restore_command(backup_id, username, collections, restore_records, restore_files, confirm):
    """Restore a backup. Target collections are REPLACED."""
    if not confirm:
        confirm = click.confirm(
            'Restore replaces the target collections wholesale. Continue?',
            default=False
        )

    request = {
        'backup_id': backup_id,
        'restore_records': restore_records,
        'restore_files': restore_files,
        'target_collections': list(collections) if collections else None,
        'confirm_overwrite': confirm,
    }

    with acting_as(_load_user(username)):
        try:
            report = get_engine().restore_from_backup(request)
        except BackupError as e:
            _fail(e)

    _echo_json(report.to_dict())


@backup_cli.command('cancel')
@click.argument('backup_id', required=False)
@click.option('--user', 'username', required=True, help='Acting user.')
def cancel_command(backup_id, username):
    """Cancel the running backup."""
    with acting_as(_load_user(username)):
        try:
            record = get_engine().cancel_backup(backup_id)
        except BackupError as e:
            _fail(e)

    click.echo(f"Cancellation requested for {record.id}")


@backup_cli.command('delete')
@click.argument('backup_id')
@click.option('--user', 'username', required=True, help='Acting user.')
def delete_command(backup_id, username):
    """Delete a backup and its artifact."""
    with acting_as(_load_user(username)):
        try:
            get_engine().delete_backup(backup_id)
        except BackupError as e:
            _fail(e)

    click.echo(f"Deleted {backup_id}")


@backup_cli.command('sweep')
def sweep_command():
    """Apply the retention policy now."""
    try:
        summary = get_engine().run_retention()
    except BackupError as e:
        _fail(e)

    _echo_json({key: summary[key] for key in ('recovered', 'deleted', 'purged', 'errors')})


@click.command('create-user')
@click.argument('username')
@click.option('--role', type=click.Choice(ROLES), default='viewer', show_default=True)
@click.password_option()
@with_appcontext
def create_user_command(username, role, password):
    """Create a dashboard user."""
    is_valid, error_msg = validate_password_strength(password)
    if not is_valid:
        raise click.ClickException(error_msg)

    if User.query.filter_by(username=username).first():
        raise click.ClickException(f"User already exists: {username}")

    db.session.add(User(username=username, password_hash=hash_password(password), role=role))
    db.session.commit()
    click.echo(f"Created {role} user {username}")


def register_commands(app):
    app.cli.add_command(backup_cli)
    app.cli.add_command(create_user_command)
