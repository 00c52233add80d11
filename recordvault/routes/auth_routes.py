"""
Authentication routes: JSON login, logout and current-user lookup.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user

from recordvault.auth import UserModel, verify_password
from recordvault.models import User


bp = Blueprint('auth', __name__, url_prefix='/api/auth')


@bp.route('/login', methods=['POST'])
def login():
    """
    Log a user in.

    Request body:
        - username
        - password

    Returns:
        JSON with the logged-in user
    """
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    if not username or not password:
        return jsonify({'error': 'Username and password are required'}), 400

    user = User.query.filter_by(username=username).first()

    if not user or not verify_password(user.password_hash, password):
        return jsonify({'error': 'Invalid username or password'}), 401

    login_user(UserModel(user), remember=True)

    return jsonify({'username': user.username, 'role': user.role})


@bp.route('/logout', methods=['POST'])
@login_required
def logout():
    """Logout handler."""
    logout_user()
    return jsonify({'message': 'Logged out'})


@bp.route('/me', methods=['GET'])
@login_required
def me():
    return jsonify({'username': current_user.username, 'role': current_user.role})
