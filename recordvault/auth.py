"""
Authentication utilities for Flask-Login integration, password management
and backup capability checks.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional

from flask import has_request_context
from flask_login import UserMixin, current_user
from werkzeug.security import generate_password_hash, check_password_hash

from recordvault.backup.types import CAP_CREATE, CAP_DELETE, CAP_RESTORE
from recordvault.models import User


ROLES = ('admin', 'operator', 'viewer')

ROLE_CAPABILITIES = {
    'admin': {CAP_CREATE, CAP_RESTORE, CAP_DELETE},
    'operator': {CAP_CREATE, CAP_DELETE},
    'viewer': set(),
}

# Actor for work started outside a request (CLI, scheduler)
_acting_user: ContextVar[Optional[User]] = ContextVar('recordvault_acting_user', default=None)


def hash_password(password: str) -> str:
    """
    Hash a password using werkzeug's pbkdf2:sha256.

    Args:
        password: Plain text password

    Returns:
        Hashed password string
    """
    return generate_password_hash(password, method='pbkdf2:sha256')


def verify_password(password_hash: str, password: str) -> bool:
    """
    Verify a password against its hash.

    Args:
        password_hash: Stored password hash
        password: Plain text password to verify

    Returns:
        True if password matches, False otherwise
    """
    return check_password_hash(password_hash, password)


def validate_password_strength(password: str) -> tuple[bool, str]:
    """
    Validate password meets security requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit

    Args:
        password: Password to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"

    if not any(c.isupper() for c in password):
        return False, "Password must contain at least one uppercase letter"

    if not any(c.islower() for c in password):
        return False, "Password must contain at least one lowercase letter"

    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one digit"

    return True, ""


class UserModel(UserMixin):
    """
    Flask-Login user wrapper for the User database model.
    """

    def __init__(self, user: User):
        self.user = user

    def get_id(self):
        """Return user ID as required by Flask-Login."""
        return str(self.user.id)

    @property
    def id(self):
        return self.user.id

    @property
    def username(self):
        return self.user.username

    @property
    def role(self):
        return self.user.role


@contextmanager
def acting_as(user: Optional[User]):
    """Run a block on behalf of `user` outside of an HTTP request."""
    token = _acting_user.set(user)
    try:
        yield
    finally:
        _acting_user.reset(token)


class FlaskLoginAuthContext:
    """
    AuthContext for the backup engine.

    The acting user is the Flask-Login user during a request, or the user
    bound with acting_as() elsewhere. Actor ids are usernames.
    """

    def current_actor_id(self) -> Optional[str]:
        user = _acting_user.get()
        if user is not None:
            return user.username

        if has_request_context() and current_user and current_user.is_authenticated:
            return current_user.username

        return None

    def has_capability(self, actor_id: str, capability: str) -> bool:
        if actor_id is None:
            return False

        user = _acting_user.get()
        if user is None or user.username != actor_id:
            user = User.query.filter_by(username=actor_id).first()
        if user is None:
            return False

        return capability in ROLE_CAPABILITIES.get(user.role, set())
