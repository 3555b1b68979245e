"""auth_service.py

Authentication for the REST API.

Functions:
 - hash_password / verify_password: werkzeug password hashes.
 - issue_token / authenticate: stateless bearer tokens signed with SECRET_KEY (itsdangerous).
 - login: username-or-email + password -> token, with the production-only login rate limiter.
 - register_user / change_password: credential management.

Failures never reveal whether a username exists: every login failure is
"Invalid credentials", and a dummy hash is checked when the user is unknown.
"""

import logging
from collections import namedtuple
from datetime import datetime, timedelta

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import or_
from werkzeug.security import check_password_hash, generate_password_hash

from config import MIN_PASSWORD_LENGTH, USER_ROLES
from errors import AuthenticationError, ConflictError, NotFoundError, RateLimitError, ValidationError
from models import LoginAttempt, User, db

logger = logging.getLogger(__name__)

TOKEN_SALT = 'auth-token'
INVALID_CREDENTIALS = 'Invalid credentials'

Principal = namedtuple('Principal', ['id', 'username', 'role', 'email'])

# Checked when the login identifier matches nobody so both paths cost one hash verification
_DUMMY_HASH = generate_password_hash('dummy-password-for-timing')


def hash_password(password):
    return generate_password_hash(password)


def verify_password(stored_hash, provided_password):
    return check_password_hash(stored_hash, provided_password)


def _serializer():
    return URLSafeTimedSerializer(current_app.config['SECRET_KEY'], salt=TOKEN_SALT)


def issue_token(user):
    return _serializer().dumps({
        'id': user.id,
        'username': user.username,
        'role': user.role,
        'email': user.email,
    })


def authenticate(authorization_header):
    """Verify an `Authorization: Bearer <token>` header and return the Principal."""
    if not authorization_header:
        raise AuthenticationError('Access token required')

    parts = authorization_header.split()
    if len(parts) != 2 or parts[0].lower() != 'bearer':
        raise AuthenticationError('Access token required')

    try:
        payload = _serializer().loads(parts[1], max_age=current_app.config['TOKEN_MAX_AGE_SECONDS'])
    except SignatureExpired:
        raise AuthenticationError('Invalid or expired token')
    except BadSignature:
        raise AuthenticationError('Invalid or expired token')

    try:
        return Principal(payload['id'], payload['username'], payload['role'], payload['email'])
    except (KeyError, TypeError):
        raise AuthenticationError('Invalid or expired token')


def check_login_rate_limit(ip_address, now=None):
    """Fixed window limiter keyed by IP. Only enforced when LOGIN_RATE_LIMIT_ENABLED."""
    if not current_app.config.get('LOGIN_RATE_LIMIT_ENABLED'):
        return

    now = now or datetime.now()
    window_start = now - timedelta(minutes=current_app.config['LOGIN_RATE_LIMIT_WINDOW_MINUTES'])
    recent_attempts = LoginAttempt.query.filter(
        LoginAttempt.ip_address == ip_address,
        LoginAttempt.created_at >= window_start
    ).count()

    if recent_attempts >= current_app.config['LOGIN_RATE_LIMIT_MAX']:
        logger.warning('Login rate limit hit for %s', ip_address)
        raise RateLimitError()


def _record_attempt(ip_address, identifier, succeeded):
    db.session.add(LoginAttempt(ip_address=ip_address, identifier=identifier, succeeded=succeeded))
    db.session.commit()


def login(identifier, password, ip_address):
    """Exchange username/email + password for a token.

    Returns:
        tuple: (user, token)
    """
    if not identifier or not password:
        raise ValidationError('Username and password are required')

    check_login_rate_limit(ip_address)

    user = User.query.filter(or_(User.username == identifier, User.email == identifier)).first()
    if user is None:
        check_password_hash(_DUMMY_HASH, password)
        _record_attempt(ip_address, identifier, False)
        raise AuthenticationError(INVALID_CREDENTIALS)

    if not verify_password(user.password_hash, password):
        _record_attempt(ip_address, identifier, False)
        raise AuthenticationError(INVALID_CREDENTIALS)

    _record_attempt(ip_address, identifier, True)
    logger.info('User %s logged in', user.username)
    return user, issue_token(user)


def _validate_password(password, field='Password'):
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'{field} must be at least {MIN_PASSWORD_LENGTH} characters long')


def _validate_role(role):
    if role not in USER_ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(USER_ROLES)}")


def register_user(username, email, password, role='teacher'):
    if not username or not email or not password:
        raise ValidationError('Username, email, and password are required')
    _validate_password(password)
    _validate_role(role)

    existing = User.query.filter(or_(User.username == username, User.email == email)).first()
    if existing:
        raise ConflictError('Username or email already exists')

    user = User(username=username, email=email, password_hash=hash_password(password), role=role)
    db.session.add(user)
    db.session.commit()
    logger.info('Registered user %s with role %s', username, role)
    return user


def change_password(user_id, current_password, new_password):
    if not current_password or not new_password:
        raise ValidationError('Current password and new password are required')
    _validate_password(new_password, field='New password')

    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError('User not found')
    if not verify_password(user.password_hash, current_password):
        raise AuthenticationError('Current password is incorrect')

    user.password_hash = hash_password(new_password)
    db.session.commit()


def update_user(user_id, username=None, email=None, role=None):
    """Admin edit of username/email/role; duplicates of another account are refused."""
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError('User not found')
    if role:
        _validate_role(role)
    if not (username or email or role):
        raise ValidationError('No fields to update')

    if username or email:
        clash = User.query.filter(
            or_(User.username == username, User.email == email),
            User.id != user_id
        ).first()
        if clash:
            raise ConflictError('Username or email already exists')

    if username:
        user.username = username
    if email:
        user.email = email
    if role:
        user.role = role
    db.session.commit()
    return user


def delete_user(user_id, acting_user_id):
    if user_id == acting_user_id:
        raise ValidationError('Cannot delete your own account')
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError('User not found')
    db.session.delete(user)
    db.session.commit()
